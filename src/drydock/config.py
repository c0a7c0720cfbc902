"""Configuration models and loader.

Every component receives its slice of :class:`DrydockConfig` at construction
time. Configuration can come from a YAML or JSON file plus a handful of
``DRYDOCK_*`` environment overrides (``.env`` is loaded by the CLI).
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from drydock.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".drydock"

_GB = 1024 * 1024 * 1024
_MB = 1024 * 1024


class VitalsWeights(BaseModel):
    """Relative weight of each signal in the composite health score."""

    momentum: int = 35
    convergence: int = 30
    budget: int = 20
    error_maturity: int = 15

    @property
    def total(self) -> int:
        return self.momentum + self.convergence + self.budget + self.error_maturity


class VerdictThresholds(BaseModel):
    """Score boundaries for the four-tier verdict.

    Scores at or above ``continue_at`` continue; scores below ``abort_below``
    abort. Between the two, an improving score warns; a flat or declining
    score warns while it stays at or above ``warn_floor`` and asks for
    intervention below it.
    """

    continue_at: int = 60
    warn_floor: int = 50
    abort_below: int = 25

    @model_validator(mode="after")
    def _check_order(self) -> VerdictThresholds:
        if not (self.abort_below <= self.warn_floor <= self.continue_at):
            raise ValueError("verdict thresholds must satisfy abort_below <= warn_floor <= continue_at")
        return self


class VitalsConfig(BaseModel):
    enabled: bool = True
    weights: VitalsWeights = Field(default_factory=VitalsWeights)
    thresholds: VerdictThresholds = Field(default_factory=VerdictThresholds)
    health_gate_threshold: int = 40
    max_snapshots: int = 20
    base_iteration_limit: int = 5
    avg_cost_per_stage: float = 0.50
    budget_safety_multiplier: float = 1.5


class TriageConfig(BaseModel):
    escalation_window: int = 5
    escalation_min_samples: int = 3
    escalation_cfr_percent: float = 40.0
    retry_escalation_after: int = 2
    template_map: dict[str, str] = Field(default_factory=dict)


class SchedulerConfig(BaseModel):
    max_parallel: int = 2
    poll_interval: int = 60
    stale_timeout: int = 1800
    job_hard_limit: int = 7200
    stagger_delay: float = 15.0
    degradation_every: int = 5
    cleanup_every: int = 10
    degradation_window: int = 5
    cfr_threshold: float = 30.0
    success_threshold: float = 50.0
    backoff_base: int = 30
    backoff_max: int = 300
    auto_pause_after: int = 3
    patrol_enabled: bool = True
    patrol_interval: int = 3600
    disk_warn_bytes: int = _GB
    disk_critical_bytes: int = 500 * _MB
    disk_pause_minutes: int = 15
    events_warn_bytes: int = 100 * _MB
    max_completed: int = 500
    max_failure_history: int = 100
    stop_timeout: int = 30
    child_grace_seconds: float = 5.0
    python_executable: str = Field(default_factory=lambda: sys.executable)

    @model_validator(mode="after")
    def _check_bounds(self) -> SchedulerConfig:
        if self.max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        if self.poll_interval < 1:
            raise ValueError("poll_interval must be >= 1")
        return self


class AgentRoleConfig(BaseModel):
    """One worker in multi-agent mode."""

    role: str
    focus: str = ""


class PipelineConfig(BaseModel):
    template: str = "standard"
    enabled_stages: list[str] | None = None
    agent: str = "claude_code"
    claude_binary: str = "claude"
    model: str = ""
    max_turns: int = 0
    iteration_timeout: int = 1800
    max_iterations: int = 20
    auto_extend: bool = True
    extension_size: int = 5
    max_extensions: int = 3
    circuit_breaker_threshold: int = 3
    min_progress_lines: int = 5
    build_test_retries: int = 2
    max_backtracks: int = 1
    test_cmd: str = ""
    test_timeout: int = 600
    dod_check: bool = True
    checkpoint_max_age_hours: int = 24
    base_branch: str = "main"
    push: bool = False
    remote: str = "origin"
    deploy_cmd: str = ""
    validate_cmd: str = ""
    monitor_cmd: str = ""
    shared_branch: str = ""
    roles: list[AgentRoleConfig] = Field(default_factory=list)
    sync_every: int = 3

    @model_validator(mode="after")
    def _check_bounds(self) -> PipelineConfig:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.max_extensions < 0 or self.max_backtracks < 0:
            raise ValueError("max_extensions and max_backtracks must be >= 0")
        if self.extension_size < 1:
            raise ValueError("extension_size must be >= 1")
        return self


class IncidentConfig(BaseModel):
    auto_response_enabled: bool = True
    p0_auto_hotfix: bool = True
    p1_auto_hotfix: bool = False
    auto_rollback_enabled: bool = False
    rollback_cmd: str = ""
    window_seconds: int = 3600
    impact_threshold: int = 5
    watch_interval: int = 60
    root_cause_patterns: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "timeout": ["timeout", "deadline", "too slow"],
            "memory": ["out of memory", "oom", "heap"],
            "dependency": ["dependency", "import", "require", "not found"],
            "auth": ["auth", "permission", "forbidden", "401", "403"],
        }
    )


class NotifyConfig(BaseModel):
    webhooks: list[str] = Field(default_factory=list)
    timeout_seconds: int = 10


class FeedConfig(BaseModel):
    repo: str = ""
    watch_label: str = "ready-to-build"
    done_label: str = "drydock:done"
    failed_label: str = "drydock:failed"
    hotfix_label: str = "hotfix"
    api_url: str = "https://api.github.com"
    request_timeout: int = 20
    max_items: int = 50


class DrydockConfig(BaseModel):
    """Root configuration object passed into every component."""

    state_dir: Path = Field(default_factory=lambda: DEFAULT_STATE_DIR)
    repo_path: Path = Field(default_factory=Path.cwd)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    vitals: VitalsConfig = Field(default_factory=VitalsConfig)
    triage: TriageConfig = Field(default_factory=TriageConfig)
    incidents: IncidentConfig = Field(default_factory=IncidentConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)

    # -- derived paths --

    @property
    def events_path(self) -> Path:
        return self.state_dir / "events.jsonl"

    @property
    def daemon_state_path(self) -> Path:
        return self.state_dir / "daemon-state.json"

    @property
    def pid_path(self) -> Path:
        return self.state_dir / "daemon.pid"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "daemon.lock"

    @property
    def shutdown_flag_path(self) -> Path:
        return self.state_dir / "daemon.shutdown"

    @property
    def pause_flag_path(self) -> Path:
        return self.state_dir / "daemon.pause"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"

    @property
    def vitals_dir(self) -> Path:
        return self.state_dir / "vitals"

    @property
    def iteration_model_path(self) -> Path:
        return self.state_dir / "iteration-model.json"

    @property
    def incidents_dir(self) -> Path:
        return self.state_dir / "incidents"

    @property
    def costs_path(self) -> Path:
        return self.state_dir / "costs.json"

    @property
    def budget_path(self) -> Path:
        return self.state_dir / "budget.json"

    @property
    def worktrees_dir(self) -> Path:
        return self.repo_path / ".worktrees"


def _parse_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc
    if not raw.strip():
        return {}
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(raw)
        else:
            data = json.loads(raw)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def _env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    state_dir = os.getenv("DRYDOCK_STATE_DIR", "").strip()
    if state_dir:
        merged["state_dir"] = state_dir
    repo = os.getenv("DRYDOCK_REPO", "").strip()
    if repo:
        merged["feed"] = {**dict(merged.get("feed") or {}), "repo": repo}
    for env_key, field_name in (
        ("DRYDOCK_MAX_PARALLEL", "max_parallel"),
        ("DRYDOCK_POLL_INTERVAL", "poll_interval"),
    ):
        raw = os.getenv(env_key, "").strip()
        if not raw:
            continue
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{env_key} must be an integer, got {raw!r}") from exc
        merged["scheduler"] = {**dict(merged.get("scheduler") or {}), field_name: value}
    label = os.getenv("DRYDOCK_WATCH_LABEL", "").strip()
    if label:
        merged["feed"] = {**dict(merged.get("feed") or {}), "watch_label": label}
    webhook = os.getenv("DRYDOCK_WEBHOOK_URL", "").strip()
    if webhook:
        notify = dict(merged.get("notify") or {})
        hooks = list(notify.get("webhooks") or [])
        if webhook not in hooks:
            hooks.append(webhook)
        notify["webhooks"] = hooks
        merged["notify"] = notify
    return merged


def load_config(path: str | Path | None = None, *, use_env: bool = True) -> DrydockConfig:
    """Load configuration from *path* (YAML or JSON), then apply env overrides.

    A missing or ``None`` path yields the defaults. Malformed files and
    invalid values raise :class:`ConfigError`.
    """
    data: dict[str, Any] = {}
    if path:
        cfg_path = Path(path).expanduser()
        if cfg_path.is_file():
            data = _parse_file(cfg_path)
            logger.debug("Loaded configuration from %s", cfg_path)
        else:
            logger.warning("Config file %s not found; using defaults", cfg_path)
    if use_env:
        data = _env_overrides(data)
    try:
        config = DrydockConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
    config.state_dir = config.state_dir.expanduser()
    config.repo_path = config.repo_path.expanduser().resolve()
    return config
