"""Scheduler: polls the work feed, runs pipelines in parallel and reaps them.

Usage::

    from drydock.config import load_config
    from drydock.feed import GitHubIssueFeed
    from drydock.scheduler import Scheduler

    config = load_config("drydock.yaml")
    Scheduler(config, feed=GitHubIssueFeed(config.feed)).run()
"""

from drydock.scheduler.daemon import Scheduler, daemon_status, start_background, stop_daemon
from drydock.scheduler.failures import FailureClass, classify_failure, decide_retry
from drydock.scheduler.health import PollBackoff, analyze_degradation, sweep
from drydock.scheduler.lock import DaemonLock
from drydock.scheduler.state import DaemonState, StateStore, pause_active, write_pause

__all__ = [
    "DaemonLock",
    "DaemonState",
    "FailureClass",
    "PollBackoff",
    "Scheduler",
    "StateStore",
    "analyze_degradation",
    "classify_failure",
    "daemon_status",
    "decide_retry",
    "pause_active",
    "start_background",
    "stop_daemon",
    "sweep",
    "write_pause",
]
