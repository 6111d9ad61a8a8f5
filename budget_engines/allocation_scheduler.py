"""
Module: budget_engines.allocation_scheduler
Responsibility:
    Redistribute budget line items between cost centers according to a
    dependency-ordered set of allocation rules.  Builds the rule
    dependency graph, queues one work item per (rule, matching source
    line item), and drains the queue in wavefront passes: each pass runs
    every pending item whose rule's dependency has completed.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  The only side effects
    are log records and the injected ``sleep`` used for throttling.

Invariants enforced:
    - Termination: dependency closure is bounded at depth 10 and aborts
      any path that revisits a rule; the wavefront loop is bounded by
      ``max_iterations``.
    - A rule is complete only once none of its work items are pending;
      a dependent rule never runs before its dependency completes
      (except for rules on a detected cycle, whose dependency is cleared).
    - Per-item atomicity: an item's results are recorded together or not
      at all.
    - Source line items are never mutated; results are new values.

Failure modes:
    - Non-fatal, reported as AllocationWarning: CYCLE_DETECTED,
      UNSUPPORTED_BASIS (item marked failed, never retried),
      UNRESOLVED_TARGET, CLOSED_PERIOD, UNSATISFIABLE_DEPENDENCY,
      ITERATION_LIMIT_EXCEEDED.
    - Fatal: AllocationCancelledError when ``should_cancel`` returns
      True between passes; no partial outcome is returned.

Usage:
    scheduler = AllocationRuleScheduler(factor_calculator)
    outcome = scheduler.allocate(
        rules=rules, source_line_items=items, cost_centers=cost_centers,
        accounts=accounts, budget_id=7,
    )
"""

from __future__ import annotations

import functools
import re
import time
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from decimal import Decimal

from budget_engines.allocation_factor import AllocationFactorCalculator
from budget_engines.rounding import apply_rounding
from budget_engines.tracer import traced_engine
from budget_kernel.domain.types import (
    AllocationBasis,
    AllocationResult,
    AllocationRule,
    AllocationTarget,
    AllocationWarning,
    BudgetLineItem,
    CostCenter,
    GLAccount,
    ProcessedRuleRecord,
    WorkItemStatus,
)
from budget_kernel.exceptions import (
    AllocationCancelledError,
    ClosedPeriodError,
    CycleDetectedError,
    IterationLimitExceededError,
    UnresolvedTargetError,
    UnsatisfiableDependencyError,
    UnsupportedBasisError,
)
from budget_kernel.logging_config import get_logger

logger = get_logger("engines.allocation_scheduler")

_ZERO = Decimal("0")

MAX_DEPENDENCY_DEPTH = 10
DEFAULT_MAX_ITERATIONS = 100


# =============================================================================
# SQL LIKE matching
# =============================================================================


@functools.lru_cache(maxsize=256)
def _like_regex(pattern: str, escape: str = "\\") -> re.Pattern[str]:
    parts: list[str] = []
    chars = iter(pattern)
    for ch in chars:
        if ch == escape:
            literal = next(chars, escape)
            parts.append(re.escape(literal))
        elif ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE | re.DOTALL)


def like_match(value: str | None, pattern: str) -> bool:
    """Case-insensitive SQL LIKE with ``%`` / ``_`` wildcards and ``\\`` escape."""
    if value is None:
        return False
    return _like_regex(pattern).fullmatch(value) is not None


# =============================================================================
# Dependency graph
# =============================================================================


@dataclass(frozen=True)
class DependencyGraph:
    """
    Rule dependency graph after cycle resolution.

    ``dependencies`` maps rule id -> the rule it waits on, with cycle
    members removed.  ``closure`` holds each rule's transitive
    prerequisites (bounded depth) and ``levels`` its chain length.
    """

    dependencies: dict[int, int]
    closure: dict[int, frozenset[int]]
    levels: dict[int, int]
    cycles: tuple[tuple[int, ...], ...] = ()

    def depends_on(self, rule_id: int) -> int | None:
        return self.dependencies.get(rule_id)


def build_dependency_graph(
    rules: Iterable[AllocationRule],
    max_depth: int = MAX_DEPENDENCY_DEPTH,
) -> DependencyGraph:
    """
    Build the bounded transitive closure of rule dependencies.

    Each rule's chain is followed at most ``max_depth`` steps.  Reaching a
    rule already on the current path records a cycle; every member of a
    cycle loses its dependency.

    A cycle of more than ``max_depth`` rules is never closed by the walk,
    so it is not reported as CYCLE_DETECTED.  Its rules keep their
    dependencies, never become runnable, and their work items end as
    UNSATISFIABLE_DEPENDENCY warnings.

    Postconditions:
        ``dependencies`` holds no cycle of ``max_depth`` rules or fewer.
    """
    direct = {
        r.rule_id: r.depends_on_rule_id
        for r in rules
        if r.depends_on_rule_id is not None
    }

    cycles: list[tuple[int, ...]] = []
    seen_cycles: set[frozenset[int]] = set()
    for rule_id in sorted(direct):
        path = [rule_id]
        current = direct.get(rule_id)
        while current is not None and len(path) <= max_depth:
            if current in path:
                cycle = tuple(path[path.index(current):])
                members = frozenset(cycle)
                if members not in seen_cycles:
                    seen_cycles.add(members)
                    cycles.append(cycle + (current,))
                break
            path.append(current)
            current = direct.get(current)

    cyclic_members = set().union(*seen_cycles) if seen_cycles else set()
    dependencies = {
        rule_id: dep for rule_id, dep in direct.items()
        if rule_id not in cyclic_members
    }

    closure: dict[int, frozenset[int]] = {}
    levels: dict[int, int] = {}
    for rule_id in direct:
        ancestors: list[int] = []
        current = dependencies.get(rule_id)
        while current is not None and len(ancestors) < max_depth and current not in ancestors:
            ancestors.append(current)
            current = dependencies.get(current)
        closure[rule_id] = frozenset(ancestors)
        levels[rule_id] = len(ancestors)

    return DependencyGraph(
        dependencies=dependencies,
        closure=closure,
        levels=levels,
        cycles=tuple(cycles),
    )


# =============================================================================
# Outcome types
# =============================================================================


@dataclass
class _WorkItem:
    rule: AllocationRule
    line_item: BudgetLineItem
    status: WorkItemStatus = WorkItemStatus.PENDING
    iteration: int | None = None


@dataclass(frozen=True)
class AllocationOutcome:
    """
    Everything one ``allocate`` call produced.

    Guarantees:
        - ``results`` are in processing order (pass, then queue order).
        - ``processed_rules`` only holds rules that allocated at least
          one work item.
    """

    results: tuple[AllocationResult, ...]
    warnings: tuple[AllocationWarning, ...]
    processed_rules: dict[int, ProcessedRuleRecord]
    completed_rule_ids: frozenset[int]
    iterations: int
    dependency_graph: DependencyGraph
    item_counts: dict[str, int] = field(default_factory=dict)

    @property
    def allocated_source_line_ids(self) -> frozenset[int]:
        return frozenset(r.source_line_item_id for r in self.results)

    @property
    def total_allocated(self) -> Decimal:
        return sum((r.allocated_amount for r in self.results), _ZERO)

    @property
    def stalled_item_count(self) -> int:
        return self.item_counts.get(WorkItemStatus.PENDING.value, 0)


# =============================================================================
# Scheduler
# =============================================================================


class AllocationRuleScheduler:
    """
    Dependency-ordered wavefront allocation.

    Contract:
        ``allocate`` is deterministic for identical inputs.  It never reads
        the clock; time only enters through the injected ``sleep`` used to
        throttle between passes.
    Guarantees:
        - Results for a rule are produced only after its dependency's
          work items have all left the pending state.
        - Partial results are returned alongside warnings when the loop
          stalls or hits ``max_iterations``.
    Non-goals:
        - Does not persist anything and does not mark source items as
          allocated; the caller materializes the outcome.
        - Rule types (direct, step-down, reciprocal, activity-based) are
          informational only.
    """

    def __init__(
        self,
        factor_calculator: AllocationFactorCalculator,
        sleep: Callable[[float], None] = time.sleep,
        max_dependency_depth: int = MAX_DEPENDENCY_DEPTH,
    ):
        self._factors = factor_calculator
        self._sleep = sleep
        self._max_dependency_depth = max_dependency_depth

    @traced_engine(
        "allocation_scheduler", "1.0",
        fingerprint_fields=("budget_id", "fiscal_period_id", "max_iterations", "batch_size"),
    )
    def allocate(
        self,
        *,
        rules: Sequence[AllocationRule],
        source_line_items: Sequence[BudgetLineItem],
        cost_centers: Iterable[CostCenter] = (),
        accounts: Iterable[GLAccount] = (),
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        budget_id: int | None = None,
        fiscal_period_id: int | None = None,
        closed_period_ids: frozenset[int] = frozenset(),
        throttle_delay: float = 0.0,
        batch_size: int | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> AllocationOutcome:
        """
        Run all active rules over the source line items.

        Args:
            rules: Candidate rules; inactive ones are ignored.
            source_line_items: Line items rules may select from.
            cost_centers: Reference data for code patterns and targets.
            accounts: Reference data for account-number patterns.
            max_iterations: Cap on wavefront passes.
            budget_id: Restrict sources to one budget.
            fiscal_period_id: Restrict sources to one period.
            closed_period_ids: Periods whose items are skipped with a warning.
            throttle_delay: Seconds to sleep between passes.
            batch_size: Max work items per pass (None = unbounded).
            should_cancel: Polled between passes.

        Raises:
            AllocationCancelledError: ``should_cancel`` returned True.
            ValueError: negative ``max_iterations`` or non-positive ``batch_size``.
        """
        if max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {max_iterations}")
        if batch_size is not None and batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        t0 = time.monotonic()
        cc_by_id = {cc.cost_center_id: cc for cc in cost_centers}
        cc_by_code = {cc.code: cc for cc in cc_by_id.values()}
        accounts_by_id = {a.account_id: a for a in accounts}

        active_rules = sorted(
            {r.rule_id: r for r in rules if r.is_active}.values(),
            key=lambda r: (r.execution_sequence, r.rule_id),
        )
        warnings: list[AllocationWarning] = []

        graph = build_dependency_graph(active_rules, self._max_dependency_depth)
        for cycle in graph.cycles:
            err = CycleDetectedError(cycle)
            warnings.append(AllocationWarning.from_error(err, rule_id=cycle[0]))
            logger.warning("allocation_cycle_detected", extra={
                "rule_ids": list(cycle),
            })

        logger.info("allocation_started", extra={
            "rule_count": len(active_rules),
            "source_line_count": len(source_line_items),
            "budget_id": budget_id,
            "fiscal_period_id": fiscal_period_id,
            "max_iterations": max_iterations,
        })

        queue = self._build_queue(
            active_rules, source_line_items, cc_by_id, accounts_by_id,
            budget_id, fiscal_period_id, closed_period_ids, warnings,
        )
        queued_rule_ids = {w.rule.rule_id for w in queue}
        targets_by_rule = {
            rule.rule_id: self._resolve_targets(rule, cc_by_id, cc_by_code, warnings)
            for rule in active_rules
            if rule.rule_id in queued_rule_ids
        }

        pending_per_rule: dict[int, int] = defaultdict(int)
        for w in queue:
            pending_per_rule[w.rule.rule_id] += 1
        completed: set[int] = {
            r.rule_id for r in active_rules if pending_per_rule[r.rule_id] == 0
        }

        results: list[AllocationResult] = []
        records: dict[int, ProcessedRuleRecord] = {}
        iteration = 0
        stalled = False

        while iteration < max_iterations:
            if iteration > 0 and should_cancel is not None and should_cancel():
                logger.warning("allocation_cancelled", extra={"iteration": iteration})
                raise AllocationCancelledError(iteration)

            ready = [
                w for w in queue
                if w.status == WorkItemStatus.PENDING
                and self._dependency_met(w.rule.rule_id, graph, completed)
            ]
            if not ready:
                stalled = any(w.status == WorkItemStatus.PENDING for w in queue)
                break
            if batch_size is not None:
                ready = ready[:batch_size]

            if iteration > 0 and throttle_delay > 0:
                self._sleep(throttle_delay)
            iteration += 1

            pass_results = 0
            for w in ready:
                item_results = self._process_item(
                    w, targets_by_rule[w.rule.rule_id], budget_id, iteration, warnings,
                )
                pending_per_rule[w.rule.rule_id] -= 1
                if item_results is None:
                    continue
                results.extend(item_results)
                pass_results += len(item_results)
                records[w.rule.rule_id] = self._merge_record(
                    records.get(w.rule.rule_id), w.rule.rule_id, item_results, iteration,
                )

            newly_completed = {
                rule_id for rule_id, count in pending_per_rule.items()
                if count == 0 and rule_id not in completed
            }
            completed |= newly_completed

            logger.info("allocation_pass_completed", extra={
                "iteration": iteration,
                "items_processed": len(ready),
                "results_produced": pass_results,
                "rules_completed": sorted(newly_completed),
            })

        pending = [w for w in queue if w.status == WorkItemStatus.PENDING]
        if pending and not stalled:
            limit_err = IterationLimitExceededError(max_iterations, len(pending))
            warnings.append(AllocationWarning.from_error(limit_err))
            logger.warning("allocation_iteration_limit_exceeded", extra={
                "max_iterations": max_iterations,
                "pending_count": len(pending),
            })
            for w in pending:
                warnings.append(AllocationWarning.from_error(
                    limit_err, rule_id=w.rule.rule_id, line_item_id=w.line_item.line_item_id,
                ))
        elif pending:
            for w in pending:
                err = UnsatisfiableDependencyError(
                    w.rule.rule_id, graph.depends_on(w.rule.rule_id),
                    w.line_item.line_item_id,
                )
                warnings.append(AllocationWarning.from_error(err))
            logger.warning("allocation_dependencies_unsatisfiable", extra={
                "pending_count": len(pending),
                "rule_ids": sorted({w.rule.rule_id for w in pending}),
            })

        counts: dict[str, int] = {status.value: 0 for status in WorkItemStatus}
        for w in queue:
            counts[w.status.value] += 1

        outcome = AllocationOutcome(
            results=tuple(results),
            warnings=tuple(warnings),
            processed_rules=records,
            completed_rule_ids=frozenset(completed),
            iterations=iteration,
            dependency_graph=graph,
            item_counts=counts,
        )

        logger.info("allocation_completed", extra={
            "iterations": iteration,
            "result_count": len(results),
            "total_allocated": str(outcome.total_allocated),
            "warning_count": len(warnings),
            "work_items": counts,
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return outcome

    # -------------------------------------------------------------------------
    # Queue construction
    # -------------------------------------------------------------------------

    def _build_queue(
        self,
        rules: list[AllocationRule],
        line_items: Sequence[BudgetLineItem],
        cc_by_id: dict[int, CostCenter],
        accounts_by_id: dict[int, GLAccount],
        budget_id: int | None,
        fiscal_period_id: int | None,
        closed_period_ids: frozenset[int],
        warnings: list[AllocationWarning],
    ) -> list[_WorkItem]:
        candidates = [
            item for item in line_items
            if (budget_id is None or item.budget_id == budget_id)
            and (fiscal_period_id is None or item.fiscal_period_id == fiscal_period_id)
            and item.final_amount != 0
            and not item.is_allocated
        ]

        queue: list[_WorkItem] = []
        closed_reported: set[int] = set()
        for rule in rules:
            for item in candidates:
                if not self._rule_selects(rule, item, cc_by_id, accounts_by_id):
                    continue
                if item.fiscal_period_id in closed_period_ids:
                    if item.line_item_id not in closed_reported:
                        closed_reported.add(item.line_item_id)
                        warnings.append(AllocationWarning.from_error(
                            ClosedPeriodError(item.fiscal_period_id, item.line_item_id),
                            rule_id=rule.rule_id,
                        ))
                    continue
                queue.append(_WorkItem(rule=rule, line_item=item))

        queue.sort(key=lambda w: (
            w.rule.execution_sequence, w.rule.rule_id, w.line_item.line_item_id,
        ))
        return queue

    @staticmethod
    def _rule_selects(
        rule: AllocationRule,
        item: BudgetLineItem,
        cc_by_id: dict[int, CostCenter],
        accounts_by_id: dict[int, GLAccount],
    ) -> bool:
        if (
            rule.source_cost_center_id is not None
            and item.cost_center_id != rule.source_cost_center_id
        ):
            return False
        if rule.source_cost_center_pattern is not None:
            cc = cc_by_id.get(item.cost_center_id)
            if not like_match(cc.code if cc else None, rule.source_cost_center_pattern):
                return False
        if rule.source_account_pattern is not None:
            account = accounts_by_id.get(item.gl_account_id)
            if not like_match(
                account.account_number if account else None, rule.source_account_pattern,
            ):
                return False
        return True

    @staticmethod
    def _resolve_targets(
        rule: AllocationRule,
        cc_by_id: dict[int, CostCenter],
        cc_by_code: dict[str, CostCenter],
        warnings: list[AllocationWarning],
    ) -> list[tuple[AllocationTarget, CostCenter]]:
        resolved: list[tuple[AllocationTarget, CostCenter]] = []
        for target in sorted(rule.targets, key=lambda t: t.priority):
            if target.cost_center_id is not None:
                cc = cc_by_id.get(target.cost_center_id)
            else:
                cc = cc_by_code.get(target.cost_center_code or "")
            if cc is None or not cc.is_active:
                warnings.append(AllocationWarning.from_error(
                    UnresolvedTargetError(rule.rule_id, target.reference),
                ))
                logger.warning("allocation_target_unresolved", extra={
                    "rule_id": rule.rule_id,
                    "target": target.reference,
                })
                continue
            resolved.append((target, cc))
        return resolved

    # -------------------------------------------------------------------------
    # Wavefront processing
    # -------------------------------------------------------------------------

    @staticmethod
    def _dependency_met(rule_id: int, graph: DependencyGraph, completed: set[int]) -> bool:
        dependency = graph.depends_on(rule_id)
        return dependency is None or dependency in completed

    def _process_item(
        self,
        work: _WorkItem,
        targets: list[tuple[AllocationTarget, CostCenter]],
        budget_id: int | None,
        iteration: int,
        warnings: list[AllocationWarning],
    ) -> list[AllocationResult] | None:
        """Allocate one work item; None when it failed."""
        rule, item = work.rule, work.line_item
        staged: list[AllocationResult] = []
        try:
            for target, cc in targets:
                percentage = self._percentage(rule, target, item, cc, budget_id)
                amount = apply_rounding(
                    item.final_amount * percentage,
                    rule.rounding_method,
                    rule.rounding_precision,
                )
                staged.append(AllocationResult(
                    source_line_item_id=item.line_item_id,
                    target_cost_center_id=cc.cost_center_id,
                    target_gl_account_id=item.gl_account_id,
                    fiscal_period_id=item.fiscal_period_id,
                    allocated_amount=amount,
                    applied_percentage=percentage,
                    rule_id=rule.rule_id,
                    iteration=iteration,
                ))
        except UnsupportedBasisError:
            work.status = WorkItemStatus.FAILED
            work.iteration = iteration
            warnings.append(AllocationWarning.from_error(
                UnsupportedBasisError(rule.basis, rule.rule_id, item.line_item_id),
            ))
            logger.warning("allocation_item_failed", extra={
                "rule_id": rule.rule_id,
                "line_item_id": item.line_item_id,
                "basis": rule.basis.value,
            })
            return None

        work.status = WorkItemStatus.PROCESSED
        work.iteration = iteration
        return staged

    def _percentage(
        self,
        rule: AllocationRule,
        target: AllocationTarget,
        item: BudgetLineItem,
        target_cc: CostCenter,
        budget_id: int | None,
    ) -> Decimal:
        if target.allocation_percentage is not None:
            return target.allocation_percentage
        if (
            rule.basis == AllocationBasis.FIXED_PERCENTAGE
            and rule.allocation_percentage is not None
        ):
            return rule.allocation_percentage
        return self._factors.factor(
            source_cost_center_id=item.cost_center_id,
            target_cost_center_id=target_cc.cost_center_id,
            basis=rule.basis,
            fiscal_period_id=item.fiscal_period_id,
            budget_id=budget_id,
        )

    @staticmethod
    def _merge_record(
        record: ProcessedRuleRecord | None,
        rule_id: int,
        item_results: list[AllocationResult],
        iteration: int,
    ) -> ProcessedRuleRecord:
        total = sum((r.allocated_amount for r in item_results), _ZERO)
        if record is None:
            return ProcessedRuleRecord(
                rule_id=rule_id,
                total_allocated=total,
                target_count=len(item_results),
                first_iteration=iteration,
                last_iteration=iteration,
            )
        return replace(
            record,
            total_allocated=record.total_allocated + total,
            target_count=record.target_count + len(item_results),
            last_iteration=iteration,
        )
