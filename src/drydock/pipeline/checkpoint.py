"""Checkpoints and durable pipeline state for resumable runs.

Layout inside a workspace::

    .drydock/checkpoints/<stage>-checkpoint.json   # per-stage progress
    .drydock/pipeline-state.json                   # completed stages, counters
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from drydock.file_io import atomic_write_text, read_json
from drydock.schemas import parse_iso, utc_now_iso

logger = logging.getLogger(__name__)


class Checkpoint(BaseModel):
    """Progress within one stage, written after each iteration and on interruption."""

    stage: str
    iteration: int = 0
    files_modified: list[str] = Field(default_factory=list)
    tests_passing: bool = False
    git_sha: str = ""
    loop_state: str = ""
    created_at: str = Field(default_factory=utc_now_iso)


class PipelineState(BaseModel):
    """Run-level state: what has finished and how the run ended."""

    issue: int | None = None
    template: str = ""
    goal: str = ""
    status: str = "running"
    current_stage: str = ""
    completed_stages: list[str] = Field(default_factory=list)
    skipped_stages: dict[str, str] = Field(default_factory=dict)
    self_heal_count: int = 0
    backtrack_count: int = 0
    extension_count: int = 0
    started_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    def mark_completed(self, stage: str) -> None:
        if stage not in self.completed_stages:
            self.completed_stages.append(stage)

    def reopen(self, stages: list[str]) -> None:
        """Forget completion of *stages* (used when backtracking)."""
        self.completed_stages = [s for s in self.completed_stages if s not in stages]


class CheckpointStore:
    """Reads and writes checkpoints and the pipeline state under a runtime directory.

    Parameters
    ----------
    runtime_dir:
        The workspace's ``.drydock`` directory.
    max_age_hours:
        Checkpoints older than this are ignored on load and removed by
        :meth:`expire`.
    """

    def __init__(self, runtime_dir: str | Path, *, max_age_hours: int = 24) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.checkpoint_dir = self.runtime_dir / "checkpoints"
        self.state_path = self.runtime_dir / "pipeline-state.json"
        self.max_age_hours = max_age_hours

    def path_for(self, stage: str) -> Path:
        return self.checkpoint_dir / f"{stage}-checkpoint.json"

    # -- checkpoints -------------------------------------------------------

    def save(self, checkpoint: Checkpoint) -> None:
        checkpoint.created_at = utc_now_iso()
        atomic_write_text(self.path_for(checkpoint.stage), checkpoint.model_dump_json(indent=2))
        logger.debug("Checkpoint saved for %s (iteration %s)", checkpoint.stage, checkpoint.iteration)

    def _is_expired(self, checkpoint: Checkpoint, path: Path, now: float) -> bool:
        created = parse_iso(checkpoint.created_at)
        stamp = created.timestamp() if created is not None else path.stat().st_mtime
        return now - stamp > self.max_age_hours * 3600

    def load(self, stage: str) -> Checkpoint | None:
        """Return the checkpoint for *stage*, or ``None`` when absent, corrupt or expired."""
        path = self.path_for(stage)
        data = read_json(path, default=None)
        if not isinstance(data, dict):
            return None
        try:
            checkpoint = Checkpoint.model_validate(data)
        except ValidationError as exc:
            logger.warning("Ignoring invalid checkpoint %s: %s", path, exc)
            return None
        if self._is_expired(checkpoint, path, time.time()):
            logger.info("Ignoring expired checkpoint for %s", stage)
            return None
        return checkpoint

    def clear(self, stage: str | None = None) -> int:
        """Remove one stage's checkpoint, or all of them; return how many."""
        targets = [self.path_for(stage)] if stage else list(self.checkpoint_dir.glob("*-checkpoint.json"))
        removed = 0
        for path in targets:
            if path.is_file():
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def expire(self, *, now: float | None = None) -> int:
        """Delete checkpoints older than ``max_age_hours``; return how many."""
        if not self.checkpoint_dir.is_dir():
            return 0
        current = now if now is not None else time.time()
        removed = 0
        for path in self.checkpoint_dir.glob("*-checkpoint.json"):
            data = read_json(path, default=None)
            try:
                checkpoint = Checkpoint.model_validate(data)
            except ValidationError:
                checkpoint = Checkpoint(stage=path.stem, created_at="")
            try:
                if self._is_expired(checkpoint, path, current):
                    path.unlink(missing_ok=True)
                    removed += 1
            except OSError:
                continue
        if removed:
            logger.info("Expired %d checkpoint(s) in %s", removed, self.checkpoint_dir)
        return removed

    # -- pipeline state ----------------------------------------------------

    def load_state(self) -> PipelineState | None:
        data = read_json(self.state_path, default=None)
        if not isinstance(data, dict):
            return None
        try:
            return PipelineState.model_validate(data)
        except ValidationError as exc:
            logger.warning("Ignoring invalid pipeline state %s: %s", self.state_path, exc)
            return None

    def save_state(self, state: PipelineState) -> None:
        state.updated_at = utc_now_iso()
        atomic_write_text(self.state_path, state.model_dump_json(indent=2))
