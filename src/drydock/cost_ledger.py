"""Cost ledger access: recent spend entries and the configured daily budget.

The ledger lives in two JSON documents under the state directory::

    costs.json   {"entries": [{"ts_epoch": 1700000000, "cost_usd": 0.42,
                               "stage": "build", "issue": 12, "model": "..."}]}
    budget.json  {"enabled": true, "daily_budget_usd": 25.0}
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from drydock.file_io import atomic_write_json, locked_path, read_json

logger = logging.getLogger(__name__)

_MAX_ENTRIES = 5000


@dataclass(frozen=True, slots=True)
class BudgetSnapshot:
    """Today's spend measured against the daily ceiling."""

    budget_usd: float
    spent_usd: float
    avg_cost_per_stage: float | None

    @property
    def remaining_usd(self) -> float:
        return self.budget_usd - self.spent_usd

    @property
    def remaining_percent(self) -> int:
        if self.budget_usd <= 0:
            return 100
        pct = int(self.remaining_usd / self.budget_usd * 100)
        return max(0, min(100, pct))


def _utc_midnight_epoch(now: float | None = None) -> float:
    current = dt.datetime.fromtimestamp(now if now is not None else time.time(), tz=dt.timezone.utc)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.timestamp()


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class CostLedger:
    """Read recent spend and the budget ceiling; append new spend entries."""

    def __init__(self, costs_path: str | Path, budget_path: str | Path) -> None:
        self.costs_path = Path(costs_path)
        self.budget_path = Path(budget_path)

    def entries(self) -> list[dict[str, Any]]:
        data = read_json(self.costs_path, default={})
        raw = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(raw, list):
            return []
        return [entry for entry in raw if isinstance(entry, dict)]

    def budget_usd(self) -> float | None:
        """Return the daily ceiling, or ``None`` when budgeting is disabled."""
        data = read_json(self.budget_path, default={})
        if not isinstance(data, dict) or not data.get("enabled"):
            return None
        budget = _as_float(data.get("daily_budget_usd"))
        return budget if budget > 0 else None

    def spent_since(self, cutoff_epoch: float) -> float:
        return sum(
            _as_float(entry.get("cost_usd"))
            for entry in self.entries()
            if _as_float(entry.get("ts_epoch")) >= cutoff_epoch
        )

    def average_stage_cost(self) -> float | None:
        costs = [
            _as_float(entry.get("cost_usd"))
            for entry in self.entries()
            if entry.get("stage") and _as_float(entry.get("cost_usd")) > 0
        ]
        if not costs:
            return None
        return sum(costs) / len(costs)

    def snapshot(self, *, now: float | None = None) -> BudgetSnapshot | None:
        """Return today's budget position, or ``None`` when no budget is configured."""
        budget = self.budget_usd()
        if budget is None:
            return None
        return BudgetSnapshot(
            budget_usd=budget,
            spent_usd=self.spent_since(_utc_midnight_epoch(now)),
            avg_cost_per_stage=self.average_stage_cost(),
        )

    def record(self, cost_usd: float, *, stage: str = "", issue: int | None = None, model: str = "") -> None:
        """Append one spend entry; zero or negative amounts are ignored."""
        if cost_usd <= 0:
            return
        entry: dict[str, Any] = {
            "ts_epoch": int(time.time()),
            "cost_usd": round(float(cost_usd), 6),
            "stage": stage,
            "model": model,
        }
        if issue is not None:
            entry["issue"] = issue
        with locked_path(self.costs_path):
            entries = self.entries()
            entries.append(entry)
            atomic_write_json(self.costs_path, {"entries": entries[-_MAX_ENTRIES:]})
        logger.debug("Recorded $%.4f spend for stage %s", cost_usd, stage or "?")
