"""Abstract base class for coding-agent runners.

The pipeline only talks to agents through this interface, so the Claude
Code runner and any test double are interchangeable.
"""

from __future__ import annotations

import abc
from pathlib import Path

from drydock.schemas import RunResult


class AgentRunner(abc.ABC):
    """Common interface for coding-agent CLI wrappers.

    Subclasses must implement :meth:`run` which accepts a workspace path and
    a prompt and returns a :class:`RunResult`.
    """

    #: Human-readable name used in logs.
    name: str = "base"

    @abc.abstractmethod
    def run(
        self,
        repo_path: str | Path,
        prompt: str,
        *,
        full_auto: bool = False,
        extra_args: list[str] | None = None,
    ) -> RunResult:
        """Execute a single agent invocation and return structured results.

        Parameters
        ----------
        repo_path:
            Working directory (the job's workspace).
        prompt:
            Composed prompt for this iteration.
        full_auto:
            If True, allow the agent to write files and run commands
            without interactive approval.
        extra_args:
            Additional CLI flags forwarded verbatim.
        """

    def stop(self) -> None:
        """Request cancellation of an in-flight invocation (no-op by default)."""


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[AgentRunner]] = {}


def register_agent(key: str, cls: type[AgentRunner]) -> None:
    """Register an agent runner class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Agent key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentRunner):
        raise TypeError("Registered agent must be an AgentRunner subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Agent '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_agent_class(key: str) -> type[AgentRunner]:
    """Look up a registered agent runner class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown agent '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_agents() -> list[str]:
    """Return all registered agent keys."""
    return sorted(_REGISTRY)


def create_agent(key: str, **kwargs: object) -> AgentRunner:
    """Instantiate the runner registered under *key*.

    Importing :mod:`drydock.claude_code` registers the default runner, so
    callers do not need to import it themselves.
    """
    if not _REGISTRY:
        import drydock.claude_code  # noqa: F401
    return get_agent_class(key)(**kwargs)
