"""Exception hierarchy shared by the scheduler, pipeline, and incident watcher."""

from __future__ import annotations


class DrydockError(Exception):
    """Base class for all drydock-specific failures."""


class ConfigError(DrydockError):
    """Raised when a configuration file cannot be read or validated."""


class FeedError(DrydockError):
    """Raised when the work feed cannot be polled or mutated.

    The scheduler treats this as an upstream error and backs off.
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class WorkspaceError(DrydockError):
    """Raised when an isolated workspace cannot be created or removed."""


class LockError(DrydockError):
    """Raised when another scheduler instance already holds the singleton lock."""


class FatalAgentError(DrydockError):
    """Raised when agent output shows an unrecoverable upstream failure.

    Authentication, rate-limit and network failures fall in this class: the
    run is aborted immediately instead of burning further iterations.
    """

    def __init__(self, message: str, *, pattern: str = "") -> None:
        super().__init__(message)
        self.pattern = pattern


class PipelineAborted(DrydockError):
    """Raised inside the stage machine to unwind a run that must stop."""

    def __init__(self, status: str, reason: str = "") -> None:
        super().__init__(reason or status)
        self.status = status
        self.reason = reason
