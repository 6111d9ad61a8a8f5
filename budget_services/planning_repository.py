"""
Planning data access seam for the run orchestrator.

``PlanningRepository`` is the read side the orchestrator needs;
``PlanningWriter`` is the optional write side used to persist a
non-dry-run's output.  Storage and query are external collaborators, so
both are Protocols.  ``InMemoryPlanningRepository`` implements both over
typed collections for tests and embedding.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Protocol, runtime_checkable

from budget_kernel.domain.types import (
    AllocationRule,
    BudgetHeader,
    BudgetLineItem,
    CostCenter,
    FiscalPeriod,
    GLAccount,
)
from budget_kernel.logging_config import get_logger

logger = get_logger("services.planning_repository")


@runtime_checkable
class PlanningRepository(Protocol):
    """Read access to planning reference data and budget facts."""

    def get_budget(self, budget_id: int) -> BudgetHeader | None: ...

    def get_fiscal_periods(self) -> tuple[FiscalPeriod, ...]: ...

    def get_gl_accounts(self) -> tuple[GLAccount, ...]: ...

    def get_cost_centers(self) -> tuple[CostCenter, ...]: ...

    def get_line_items(self, budget_id: int) -> tuple[BudgetLineItem, ...]: ...

    def get_allocation_rules(self) -> tuple[AllocationRule, ...]: ...

    def get_intercompany_partners(self) -> Mapping[int, int]: ...

    def next_line_item_id(self) -> int: ...

    def next_budget_id(self) -> int: ...


@runtime_checkable
class PlanningWriter(Protocol):
    """Persistence of a run's materialized output."""

    def save_run_output(
        self,
        budget_id: int,
        allocated_items: tuple[BudgetLineItem, ...],
        source_line_ids: frozenset[int],
        consolidated_header: BudgetHeader | None = None,
        consolidated_items: tuple[BudgetLineItem, ...] = (),
    ) -> None:
        """Save all of a run's output in one unit of work, or none of it."""
        ...


class InMemoryPlanningRepository:
    """Dict-backed repository and writer.  Thread-safe for concurrent runs."""

    def __init__(
        self,
        *,
        budgets: Iterable[BudgetHeader] = (),
        fiscal_periods: Iterable[FiscalPeriod] = (),
        accounts: Iterable[GLAccount] = (),
        cost_centers: Iterable[CostCenter] = (),
        line_items: Iterable[BudgetLineItem] = (),
        rules: Iterable[AllocationRule] = (),
        intercompany_partners: Mapping[int, int] | None = None,
    ):
        self._lock = threading.Lock()
        self._budgets = {b.budget_id: b for b in budgets}
        self._periods = tuple(fiscal_periods)
        self._accounts = tuple(accounts)
        self._cost_centers = tuple(cost_centers)
        self._line_items: dict[int, BudgetLineItem] = {
            item.line_item_id: item for item in line_items
        }
        self._rules = tuple(rules)
        self._partners = dict(intercompany_partners or {})
        self._next_line_id = max(self._line_items, default=0) + 1
        self._next_budget_id = max(self._budgets, default=0) + 1

    # -- PlanningRepository ---------------------------------------------------

    def get_budget(self, budget_id: int) -> BudgetHeader | None:
        return self._budgets.get(budget_id)

    def get_fiscal_periods(self) -> tuple[FiscalPeriod, ...]:
        return self._periods

    def get_gl_accounts(self) -> tuple[GLAccount, ...]:
        return self._accounts

    def get_cost_centers(self) -> tuple[CostCenter, ...]:
        return self._cost_centers

    def get_line_items(self, budget_id: int) -> tuple[BudgetLineItem, ...]:
        with self._lock:
            return tuple(
                item for _, item in sorted(self._line_items.items())
                if item.budget_id == budget_id
            )

    def get_allocation_rules(self) -> tuple[AllocationRule, ...]:
        return self._rules

    def get_intercompany_partners(self) -> Mapping[int, int]:
        return dict(self._partners)

    def next_line_item_id(self) -> int:
        with self._lock:
            value = self._next_line_id
            self._next_line_id += 1
            return value

    def next_budget_id(self) -> int:
        with self._lock:
            value = self._next_budget_id
            self._next_budget_id += 1
            return value

    # -- PlanningWriter -------------------------------------------------------

    def save_run_output(
        self,
        budget_id: int,
        allocated_items: tuple[BudgetLineItem, ...],
        source_line_ids: frozenset[int],
        consolidated_header: BudgetHeader | None = None,
        consolidated_items: tuple[BudgetLineItem, ...] = (),
    ) -> None:
        # Stage on copies and swap only once every change applied
        with self._lock:
            budgets = dict(self._budgets)
            line_items = dict(self._line_items)
            self._apply_allocations(line_items, allocated_items, source_line_ids)
            if consolidated_header is not None:
                self._apply_consolidated(
                    budgets, line_items, consolidated_header, consolidated_items,
                )
            self._budgets = budgets
            self._line_items = line_items

        logger.info("run_output_saved", extra={
            "budget_id": budget_id,
            "allocated_count": len(allocated_items),
            "marked_source_count": len(source_line_ids),
            "consolidated_budget_id": (
                consolidated_header.budget_id if consolidated_header is not None else None
            ),
            "consolidated_line_count": len(consolidated_items),
        })

    def _apply_allocations(
        self,
        line_items: dict[int, BudgetLineItem],
        allocated_items: tuple[BudgetLineItem, ...],
        source_line_ids: frozenset[int],
    ) -> None:
        for item in allocated_items:
            line_items[item.line_item_id] = item
        for line_id in source_line_ids:
            source = line_items.get(line_id)
            if source is not None:
                line_items[line_id] = replace(source, is_allocated=True)

    def _apply_consolidated(
        self,
        budgets: dict[int, BudgetHeader],
        line_items: dict[int, BudgetLineItem],
        header: BudgetHeader,
        items: tuple[BudgetLineItem, ...],
    ) -> None:
        budgets[header.budget_id] = header
        for item in items:
            line_items[item.line_item_id] = item
