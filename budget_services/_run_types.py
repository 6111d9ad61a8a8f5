"""
budget_services._run_types -- DTOs for the allocation run orchestrator.

Responsibility:
    Frozen dataclasses describing one consolidation/allocation run: the
    concurrency mode requested, the per-step processing log, the run
    summary handed to callers and monitoring, and the full run result.

Architecture position:
    Services -- these types live beside the orchestrator that produces
    them.  They depend on kernel domain types and engine outcome types.

Invariants enforced:
    - All DTOs are frozen dataclasses; collections are tuples.
    - ``RunSummary.to_dict`` is JSON-safe (Decimals, UUIDs and datetimes
      rendered as strings).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from budget_engines.allocation_scheduler import AllocationOutcome
from budget_engines.consolidation import ConsolidationResult
from budget_kernel.domain.types import (
    AllocationWarning,
    BudgetHeader,
    BudgetLineItem,
    HierarchyNode,
)


class ConcurrencyMode(str, Enum):
    """How a run takes the budget's run lock."""

    EXCLUSIVE = "exclusive"
    SHARED = "shared"
    NONE = "none"  # No lock taken


class RunStatus(str, Enum):
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepLog:
    """One entry of the run's processing log."""

    name: str
    status: StepStatus
    started_at: datetime
    completed_at: datetime
    rows: int = 0
    warning_count: int = 0
    message: str | None = None


@dataclass(frozen=True)
class RunSummary:
    """Machine-readable summary of a finished run."""

    run_id: UUID
    budget_id: int
    status: RunStatus
    dry_run: bool
    concurrency_mode: ConcurrencyMode
    started_at: datetime
    completed_at: datetime
    steps: tuple[StepLog, ...] = ()
    warnings: tuple[AllocationWarning, ...] = ()

    @property
    def duration_ms(self) -> float:
        return round((self.completed_at - self.started_at).total_seconds() * 1000, 2)

    def step(self, name: str) -> StepLog | None:
        for entry in self.steps:
            if entry.name == name:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "runId": str(self.run_id),
            "budgetId": self.budget_id,
            "status": self.status.value,
            "dryRun": self.dry_run,
            "concurrencyMode": self.concurrency_mode.value,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
            "durationMs": self.duration_ms,
            "steps": {
                entry.name: {
                    "status": entry.status.value,
                    "rows": entry.rows,
                    "warnings": entry.warning_count,
                }
                for entry in self.steps
            },
            "warnings": [w.to_dict() for w in self.warnings],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, default=str)


@dataclass(frozen=True)
class AllocationRunResult:
    """
    Everything a successful run produced.

    ``allocated_line_items`` and ``consolidated_line_items`` are empty for
    a dry run; the computed engine outcomes are always present.
    """

    summary: RunSummary
    hierarchy: tuple[HierarchyNode, ...]
    consolidation: ConsolidationResult
    allocation: AllocationOutcome
    allocated_line_items: tuple[BudgetLineItem, ...] = ()
    source_line_ids_to_mark: frozenset[int] = field(default_factory=frozenset)
    consolidated_budget: BudgetHeader | None = None
    consolidated_line_items: tuple[BudgetLineItem, ...] = ()

    @property
    def run_id(self) -> UUID:
        return self.summary.run_id

    @property
    def status(self) -> RunStatus:
        return self.summary.status
