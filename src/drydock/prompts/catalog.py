"""Prompt catalog: loads stage prompts from ``templates.yaml``.

A user override file at ``~/.drydock/prompt_overrides.yaml`` (and an optional
project file) is deep-merged on top of the built-in templates.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"
_USER_OVERRIDE = Path.home() / ".drydock" / "prompt_overrides.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict when unreadable."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class _Blank(dict):
    """Format mapping that renders unknown placeholders as empty strings."""

    def __missing__(self, key: str) -> str:
        return ""


class PromptCatalog:
    """Serves stage prompts and shared prompt fragments.

    Usage::

        catalog = PromptCatalog()
        text = catalog.render("build", goal="Fix #12", artifacts_dir=".drydock/artifacts")
    """

    def __init__(self, extra_path: Path | None = None, *, user_override: Path | None = _USER_OVERRIDE) -> None:
        self._data = _load_yaml(_BUILTIN_YAML)
        for path in (user_override, extra_path):
            if path is None or not path.exists():
                continue
            overrides = _load_yaml(path)
            if overrides:
                self._data = _deep_merge(self._data, overrides)
                logger.info("Loaded prompt overrides from %s", path)

    def stage(self, stage: str) -> str:
        """Return the raw prompt template for *stage* (empty when undefined)."""
        entry = self._data.get("stages", {}).get(stage, {})
        return (entry.get("prompt") or "").strip() if isinstance(entry, dict) else ""

    def fragment(self, key: str) -> str:
        return str(self._data.get("fragments", {}).get(key) or "").strip()

    def list_stages(self) -> list[str]:
        return list(self._data.get("stages", {}).keys())

    def render(self, stage: str, **context: Any) -> str:
        """Fill the *stage* template with *context*; missing keys render empty."""
        template = self.stage(stage)
        if not template:
            template = self.fragment("default_stage")
        values = _Blank({k: "" if v is None else v for k, v in context.items()})
        values.setdefault("stage", stage)
        return template.format_map(values).strip()

    def render_fragment(self, key: str, **context: Any) -> str:
        return self.fragment(key).format_map(_Blank(context)).strip()

    @property
    def raw(self) -> dict[str, Any]:
        return self._data


_default_catalog: PromptCatalog | None = None


def get_catalog() -> PromptCatalog:
    """Return the module-level singleton catalog (lazy-loaded)."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = PromptCatalog()
    return _default_catalog
