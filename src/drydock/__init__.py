"""drydock - autonomous scheduler and pipeline engine for AI coding agents.

Usage::

    drydock daemon start            # poll the feed and run pipelines
    drydock pipeline run --issue 42 # run one job in the current checkout
    drydock incident watch          # classify failure bursts
"""

from importlib.metadata import PackageNotFoundError, version

from drydock.config import DrydockConfig, load_config
from drydock.schemas import EvalResult, Job, RunResult, StageResult, WorkItem

__all__ = [
    "DrydockConfig",
    "EvalResult",
    "Job",
    "RunResult",
    "StageResult",
    "WorkItem",
    "load_config",
]

try:
    __version__ = version("drydock")
except PackageNotFoundError:
    __version__ = "0.0.0"
