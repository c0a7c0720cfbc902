"""Job pipeline: stages, build loop, quality gates and checkpoints.

A job moves through the stages of its template:

    intake → plan → design → build ⇄ test → review → compound_quality → pr → merge

Build and test self-heal as a pair, review findings may send the run back to
design, and progress is checkpointed under ``.drydock/`` in the workspace.

Usage::

    from drydock.pipeline import PipelineEngine

    engine = PipelineEngine(config, workspace, item=work_item)
    result = engine.run()
"""

from drydock.pipeline.engine import PipelineEngine, PipelineResult, PipelineStatus
from drydock.pipeline.findings import ClassifiedFindings, FindingCategory, classify_findings
from drydock.pipeline.gates import GateReport, QualityGates
from drydock.pipeline.loop import BuildLoop, LoopOutcome, LoopStatus
from drydock.pipeline.stages import Stage

__all__ = [
    "BuildLoop",
    "ClassifiedFindings",
    "FindingCategory",
    "GateReport",
    "LoopOutcome",
    "LoopStatus",
    "PipelineEngine",
    "PipelineResult",
    "PipelineStatus",
    "QualityGates",
    "Stage",
    "classify_findings",
]
