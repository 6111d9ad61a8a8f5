"""
budget_services.allocation_run_orchestrator -- One consolidation/allocation run.

Responsibility:
    Validate a run request against the planning data, serialize it with
    other runs on the same budget through the RunLock, and sequence the
    engines: resolve hierarchy -> consolidate -> allocate -> materialize.
    All calculation lives in ``budget_engines``; the orchestrator adds
    validation, locking, step logging and the hand-off of results.

Architecture position:
    Services -- stateful orchestration over engines + kernel.
    Reads through a ``PlanningRepository``; writes only through an
    optional ``PlanningWriter``.  Consumes DTOs from ``_run_types``.

Invariants enforced:
    - The lock is held for the whole run and released on every exit path.
      The lease is renewed between allocation passes and before the
      materialize and persist steps.
    - Run-level failures raise and hand back nothing; nothing is written
      before every engine step has succeeded.
    - Output is saved in one ``save_run_output`` call: all of it or none.
    - Unreconciled intercompany balances are run warnings
      (UNRECONCILED_INTERCOMPANY) ahead of the allocation warnings.
    - A dry run computes everything and materializes nothing.
    - The run date comes from the injected clock, never the system time.

Failure modes:
    - BudgetNotFoundError, BudgetStatusError (not APPROVED or LOCKED).
    - PeriodNotFoundError, PeriodOutOfRangeError, ClosedPeriodError for an
      explicit ``fiscal_period_id``.
    - CostCenterNotFoundError for an unknown ``root_cost_center_id``.
    - LockTimeoutError when another run holds the budget.
    - AllocationCancelledError when ``should_cancel`` fires between passes.
    - LeaseNotHeldError when the lease was lost (expired and reaped).
    - RunPersistenceError wrapping any writer failure.

Audit relevance:
    Every log record of the run carries ``run_id`` and ``budget_id``
    through LogContext, and the RunSummary records row and warning
    counts per step.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from contextlib import nullcontext
from datetime import date, datetime
from uuid import UUID, uuid4

from budget_config.schema import EngineSettings
from budget_engines.allocation_factor import AllocationFactorCalculator
from budget_engines.allocation_scheduler import AllocationOutcome, AllocationRuleScheduler
from budget_engines.consolidation import ConsolidationAggregator, ConsolidationResult
from budget_engines.hierarchy import HierarchyResolver
from budget_kernel.domain.clock import Clock
from budget_kernel.domain.types import (
    AllocationRule,
    AllocationWarning,
    BudgetHeader,
    BudgetLineItem,
    BudgetStatus,
    FiscalPeriod,
)
from budget_kernel.exceptions import (
    BudgetEngineError,
    BudgetNotFoundError,
    BudgetStatusError,
    ClosedPeriodError,
    PeriodNotFoundError,
    PeriodOutOfRangeError,
    RunPersistenceError,
    UnreconciledIntercompanyError,
)
from budget_kernel.logging_config import LogContext, get_logger
from budget_services._run_types import (
    AllocationRunResult,
    ConcurrencyMode,
    RunStatus,
    RunSummary,
    StepLog,
    StepStatus,
)
from budget_services.planning_repository import PlanningRepository, PlanningWriter
from budget_services.run_lock import Lease, RunLock

logger = get_logger("services.allocation_run_orchestrator")

RUNNABLE_STATUSES: tuple[BudgetStatus, ...] = (BudgetStatus.APPROVED, BudgetStatus.LOCKED)


class AllocationRunOrchestrator:
    """
    Sequences validate -> lock -> hierarchy -> consolidation -> allocation.

    Contract:
        ``run`` either returns a complete ``AllocationRunResult`` or raises
        a ``BudgetEngineError`` subclass.
    Guarantees:
        - Source line items are never modified; allocations are new line
          items plus the set of source ids to mark as allocated.
        - When a ``writer`` is configured and the run is not a dry run,
          output is saved in one writer call while the lock is still held.
    Non-goals:
        - Does not retry on lock timeout; callers decide.
    """

    def __init__(
        self,
        repository: PlanningRepository,
        run_lock: RunLock,
        clock: Clock,
        settings: EngineSettings | None = None,
        writer: PlanningWriter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._run_lock = run_lock
        self._clock = clock
        self._settings = settings or EngineSettings()
        self._writer = writer
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        budget_id: int,
        rule_ids: Iterable[int] | None = None,
        fiscal_period_id: int | None = None,
        dry_run: bool = False,
        concurrency_mode: ConcurrencyMode = ConcurrencyMode.EXCLUSIVE,
        root_cost_center_id: int | None = None,
        create_consolidated_budget: bool = True,
        should_cancel: Callable[[], bool] | None = None,
    ) -> AllocationRunResult:
        """Execute one run for ``budget_id``.

        Args:
            budget_id: Budget to consolidate and allocate.
            rule_ids: Restrict allocation to these rules (None = all).
            fiscal_period_id: Restrict to one period (None = all periods).
            dry_run: Compute without materializing or saving anything.
            concurrency_mode: How the budget's run lock is taken.
            root_cost_center_id: Restrict the hierarchy to this subtree.
            create_consolidated_budget: Emit a DRAFT consolidated budget
                header with one line item per consolidated amount.
            should_cancel: Polled between allocation passes.
        """
        run_id = uuid4()
        started_at = self._clock.now()
        wanted_rules = frozenset(rule_ids) if rule_ids is not None else None

        with LogContext.bind(
            correlation_id=str(run_id), run_id=str(run_id), budget_id=str(budget_id),
        ):
            logger.info("allocation_run_started", extra={
                "fiscal_period_id": fiscal_period_id,
                "dry_run": dry_run,
                "concurrency_mode": concurrency_mode.value,
                "rule_ids": sorted(wanted_rules) if wanted_rules is not None else None,
            })
            try:
                return self._run(
                    run_id=run_id,
                    started_at=started_at,
                    budget_id=budget_id,
                    rule_ids=wanted_rules,
                    fiscal_period_id=fiscal_period_id,
                    dry_run=dry_run,
                    concurrency_mode=concurrency_mode,
                    root_cost_center_id=root_cost_center_id,
                    create_consolidated_budget=create_consolidated_budget,
                    should_cancel=should_cancel,
                )
            except BudgetEngineError as exc:
                logger.error("allocation_run_failed", extra={
                    "error_code": exc.code,
                    "error": str(exc),
                })
                raise

    def _run(
        self,
        *,
        run_id: UUID,
        started_at: datetime,
        budget_id: int,
        rule_ids: frozenset[int] | None,
        fiscal_period_id: int | None,
        dry_run: bool,
        concurrency_mode: ConcurrencyMode,
        root_cost_center_id: int | None,
        create_consolidated_budget: bool,
        should_cancel: Callable[[], bool] | None,
    ) -> AllocationRunResult:
        steps: list[StepLog] = []
        settings = self._settings

        step_start = self._clock.now()
        budget, periods = self._validate(budget_id, fiscal_period_id)
        steps.append(self._step("validate", step_start, rows=1))

        step_start = self._clock.now()
        lock_scope = self._lock_scope(budget_id, concurrency_mode)
        with lock_scope as lease:
            steps.append(self._step(
                "acquire_lock", step_start,
                status=(
                    StepStatus.SKIPPED if concurrency_mode == ConcurrencyMode.NONE
                    else StepStatus.COMPLETED
                ),
                message=concurrency_mode.value,
            ))
            as_of = self._clock.today()

            # Hierarchy
            step_start = self._clock.now()
            cost_centers = self._repository.get_cost_centers()
            hierarchy = HierarchyResolver(cost_centers).resolve(
                as_of=as_of,
                root_id=root_cost_center_id,
                max_depth=settings.hierarchy.max_depth,
            )
            steps.append(self._step("resolve_hierarchy", step_start, rows=len(hierarchy)))

            # Consolidation
            step_start = self._clock.now()
            accounts = self._repository.get_gl_accounts()
            line_items = self._repository.get_line_items(budget_id)
            if fiscal_period_id is not None:
                scoped_items = tuple(
                    i for i in line_items if i.fiscal_period_id == fiscal_period_id
                )
            else:
                scoped_items = line_items
            consolidation = ConsolidationAggregator(
                accounts, self._repository.get_intercompany_partners(),
            ).consolidate(
                budget_id=budget_id,
                hierarchy=hierarchy,
                line_items=scoped_items,
                include_eliminations=settings.consolidation.include_eliminations,
                rounding_precision=settings.consolidation.rounding_precision,
                include_zero_balances=settings.consolidation.include_zero_balances,
            )
            consolidation_warnings = self._unreconciled_warnings(consolidation)
            steps.append(self._step(
                "consolidate", step_start,
                rows=len(consolidation.amounts),
                warnings=len(consolidation_warnings),
            ))

            def between_passes() -> bool:
                self._renew(lease)
                return should_cancel is not None and should_cancel()

            # Allocation
            step_start = self._clock.now()
            rules = self._select_rules(rule_ids, as_of)
            calculator = AllocationFactorCalculator(
                cost_centers, accounts, line_items,
                precision=settings.allocation.factor_precision,
            )
            scheduler = AllocationRuleScheduler(
                calculator,
                sleep=self._sleep,
                max_dependency_depth=settings.allocation.max_dependency_depth,
            )
            outcome = scheduler.allocate(
                rules=rules,
                source_line_items=line_items,
                cost_centers=cost_centers,
                accounts=accounts,
                max_iterations=settings.allocation.max_iterations,
                budget_id=budget_id,
                fiscal_period_id=fiscal_period_id,
                closed_period_ids=frozenset(p.fiscal_period_id for p in periods if p.is_closed),
                throttle_delay=settings.allocation.throttle_delay_seconds,
                batch_size=settings.allocation.batch_size,
                should_cancel=between_passes,
            )
            steps.append(self._step(
                "allocate", step_start,
                rows=len(outcome.results),
                warnings=len(outcome.warnings),
            ))

            # Materialization
            self._renew(lease)
            step_start = self._clock.now()
            allocated_items: tuple[BudgetLineItem, ...] = ()
            source_ids: frozenset[int] = frozenset()
            consolidated_header: BudgetHeader | None = None
            consolidated_items: tuple[BudgetLineItem, ...] = ()
            if dry_run:
                steps.append(self._step(
                    "materialize", step_start, status=StepStatus.SKIPPED, message="dry_run",
                ))
            else:
                allocated_items = self._materialize_allocations(run_id, budget_id, outcome)
                source_ids = outcome.allocated_source_line_ids
                if create_consolidated_budget:
                    consolidated_header, consolidated_items = self._materialize_consolidation(
                        run_id, budget, consolidation,
                    )
                steps.append(self._step(
                    "materialize", step_start,
                    rows=len(allocated_items) + len(consolidated_items),
                ))

            if self._writer is not None and not dry_run:
                self._renew(lease)
                step_start = self._clock.now()
                self._persist(
                    budget_id, allocated_items, source_ids,
                    consolidated_header, consolidated_items,
                )
                steps.append(self._step(
                    "persist", step_start,
                    rows=len(allocated_items) + len(consolidated_items),
                ))

        warnings = consolidation_warnings + outcome.warnings
        status = RunStatus.COMPLETED_WITH_WARNINGS if warnings else RunStatus.COMPLETED
        summary = RunSummary(
            run_id=run_id,
            budget_id=budget_id,
            status=status,
            dry_run=dry_run,
            concurrency_mode=concurrency_mode,
            started_at=started_at,
            completed_at=self._clock.now(),
            steps=tuple(steps),
            warnings=warnings,
        )

        logger.info("allocation_run_completed", extra={
            "status": status.value,
            "dry_run": dry_run,
            "hierarchy_nodes": len(hierarchy),
            "consolidated_rows": len(consolidation.amounts),
            "allocation_results": len(outcome.results),
            "total_allocated": str(outcome.total_allocated),
            "warning_count": len(warnings),
            "duration_ms": summary.duration_ms,
        })

        return AllocationRunResult(
            summary=summary,
            hierarchy=hierarchy,
            consolidation=consolidation,
            allocation=outcome,
            allocated_line_items=allocated_items,
            source_line_ids_to_mark=source_ids,
            consolidated_budget=consolidated_header,
            consolidated_line_items=consolidated_items,
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(
        self, budget_id: int, fiscal_period_id: int | None,
    ) -> tuple[BudgetHeader, tuple[FiscalPeriod, ...]]:
        budget = self._repository.get_budget(budget_id)
        if budget is None:
            raise BudgetNotFoundError(budget_id)
        if budget.status not in RUNNABLE_STATUSES:
            raise BudgetStatusError(
                budget_id, budget.status.value, tuple(s.value for s in RUNNABLE_STATUSES),
            )

        periods = self._repository.get_fiscal_periods()
        if fiscal_period_id is not None:
            period = next(
                (p for p in periods if p.fiscal_period_id == fiscal_period_id), None,
            )
            if period is None:
                raise PeriodNotFoundError(fiscal_period_id)
            if not budget.covers_period(fiscal_period_id):
                raise PeriodOutOfRangeError(fiscal_period_id, budget_id)
            if period.is_closed:
                raise ClosedPeriodError(fiscal_period_id)
        return budget, periods

    def _lock_scope(self, budget_id: int, mode: ConcurrencyMode):
        lock_settings = self._settings.run_lock
        resource = lock_settings.resource_name(budget_id)
        match mode:
            case ConcurrencyMode.EXCLUSIVE:
                return self._run_lock.hold(
                    resource, exclusive=True,
                    timeout=lock_settings.exclusive_timeout_seconds,
                )
            case ConcurrencyMode.SHARED:
                return self._run_lock.hold(
                    resource, exclusive=False,
                    timeout=lock_settings.shared_timeout_seconds,
                )
            case _:
                return nullcontext()

    def _renew(self, lease: Lease | None) -> None:
        """Keep a held lease alive; a lost lease aborts the run before any write."""
        if lease is not None:
            self._run_lock.renew(lease)

    def _select_rules(
        self, rule_ids: frozenset[int] | None, as_of: date,
    ) -> tuple[AllocationRule, ...]:
        rules = self._repository.get_allocation_rules()
        if rule_ids is not None:
            missing = rule_ids - {r.rule_id for r in rules}
            if missing:
                logger.warning("allocation_rules_not_found", extra={
                    "rule_ids": sorted(missing),
                })
            rules = tuple(r for r in rules if r.rule_id in rule_ids)
        return tuple(r for r in rules if r.is_active and r.is_effective(as_of))

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    @staticmethod
    def _unreconciled_warnings(
        consolidation: ConsolidationResult,
    ) -> tuple[AllocationWarning, ...]:
        return tuple(
            AllocationWarning.from_error(UnreconciledIntercompanyError(
                u.gl_account_id, u.cost_center_id, u.fiscal_period_id,
                u.unmatched_amount, u.partner_cost_center_id,
            ))
            for u in consolidation.unreconciled
        )

    def _persist(
        self,
        budget_id: int,
        allocated_items: tuple[BudgetLineItem, ...],
        source_ids: frozenset[int],
        consolidated_header: BudgetHeader | None,
        consolidated_items: tuple[BudgetLineItem, ...],
    ) -> None:
        try:
            self._writer.save_run_output(
                budget_id, allocated_items, source_ids,
                consolidated_header=consolidated_header,
                consolidated_items=consolidated_items,
            )
        except BudgetEngineError:
            raise
        except Exception as exc:
            raise RunPersistenceError(budget_id, exc) from exc

    def _materialize_allocations(
        self, run_id: UUID, budget_id: int, outcome: AllocationOutcome,
    ) -> tuple[BudgetLineItem, ...]:
        return tuple(
            BudgetLineItem(
                line_item_id=self._repository.next_line_item_id(),
                budget_id=budget_id,
                gl_account_id=result.target_gl_account_id,
                cost_center_id=result.target_cost_center_id,
                fiscal_period_id=result.fiscal_period_id,
                original_amount=result.allocated_amount,
                is_allocated=True,
                allocation_source_line_id=result.source_line_item_id,
                allocation_percentage=result.applied_percentage,
                source_reference=f"ALLOC:{result.rule_id}:{run_id}",
            )
            for result in outcome.results
        )

    def _materialize_consolidation(
        self, run_id: UUID, budget: BudgetHeader, consolidation: ConsolidationResult,
    ) -> tuple[BudgetHeader, tuple[BudgetLineItem, ...]]:
        header = BudgetHeader(
            budget_id=self._repository.next_budget_id(),
            code=f"{budget.code}_CONSOL_{self._clock.today():%Y%m%d}",
            name=f"{budget.name} - Consolidated",
            status=BudgetStatus.DRAFT,
            fiscal_year=budget.fiscal_year,
            start_period_id=budget.start_period_id,
            end_period_id=budget.end_period_id,
            base_budget_id=budget.budget_id,
            budget_type="consolidated",
        )
        items = tuple(
            BudgetLineItem(
                line_item_id=self._repository.next_line_item_id(),
                budget_id=header.budget_id,
                gl_account_id=key.gl_account_id,
                cost_center_id=key.cost_center_id,
                fiscal_period_id=key.fiscal_period_id,
                original_amount=(
                    amount.final_amount if amount.final_amount is not None
                    else amount.consolidated_amount
                ),
                source_reference=f"CONSOL:{run_id}",
            )
            for key, amount in sorted(consolidation.amounts.items())
        )
        return header, items

    def _step(
        self,
        name: str,
        started_at: datetime,
        *,
        rows: int = 0,
        warnings: int = 0,
        status: StepStatus = StepStatus.COMPLETED,
        message: str | None = None,
    ) -> StepLog:
        entry = StepLog(
            name=name,
            status=status,
            started_at=started_at,
            completed_at=self._clock.now(),
            rows=rows,
            warning_count=warnings,
            message=message,
        )
        logger.info("allocation_run_step", extra={
            "step": name,
            "step_status": status.value,
            "rows": rows,
            "warnings": warnings,
        })
        return entry
