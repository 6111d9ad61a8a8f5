"""
Tests for AllocationRunOrchestrator.

Covers:
- The Region-West rent run end to end
- Materialized allocations and the consolidated budget copy
- Persistence through a PlanningWriter, all-or-nothing saves and idempotent re-runs
- Dry runs
- Run validation failures
- Lock modes, lock timeouts and release after failure
- Lease renewal for long runs on the SQL lock
- Unreconciled intercompany balances as run warnings
- Run summary serialization and log context
"""

import json
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from budget_config.schema import AllocationSettings, EngineSettings, RunLockSettings
from budget_kernel.domain.types import (
    AccountType,
    AllocationBasis,
    AllocationRule,
    AllocationTarget,
    BudgetStatus,
    FiscalPeriod,
    GLAccount,
)
from budget_kernel.exceptions import (
    AllocationCancelledError,
    BudgetNotFoundError,
    BudgetStatusError,
    ClosedPeriodError,
    CostCenterNotFoundError,
    LeaseNotHeldError,
    LockTimeoutError,
    PeriodNotFoundError,
    PeriodOutOfRangeError,
    RunPersistenceError,
)
from budget_services import (
    AllocationRunOrchestrator,
    ConcurrencyMode,
    InMemoryPlanningRepository,
    InProcessRunLock,
    RunStatus,
    SqlRunLock,
    StepStatus,
)
from tests.conftest import (
    BUDGET_ID,
    CORPORATE,
    FEB,
    IC_PAYABLE,
    IC_RECEIVABLE,
    JAN,
    MAR,
    REGION_WEST,
    RENT,
    SALES,
    STORE_A,
    STORE_B,
    SUPPLIES,
    line,
)

APR = 202604
LOCK_RESOURCE = f"cost_allocation:{BUDGET_ID}"


@pytest.fixture
def repository(budget, fiscal_periods, accounts, cost_centers, rent_line, rent_rule):
    return InMemoryPlanningRepository(
        budgets=[budget],
        fiscal_periods=fiscal_periods + (
            FiscalPeriod(APR, 2026, 4, date(2026, 4, 1), date(2026, 4, 30)),
        ),
        accounts=accounts,
        cost_centers=cost_centers,
        line_items=[rent_line],
        rules=[rent_rule],
    )


class _FailingConsolidatedSave(InMemoryPlanningRepository):
    """Writer that fails after the allocations are already staged."""

    def _apply_consolidated(self, budgets, line_items, header, items):
        raise RuntimeError("consolidated budget table unavailable")


@pytest.fixture
def run_lock(deterministic_clock):
    return InProcessRunLock(clock=deterministic_clock)


@pytest.fixture
def settings():
    return EngineSettings(
        run_lock=RunLockSettings(exclusive_timeout_seconds=0, shared_timeout_seconds=0),
    )


@pytest.fixture
def orchestrator(repository, run_lock, deterministic_clock, settings):
    return AllocationRunOrchestrator(
        repository, run_lock, deterministic_clock, settings=settings,
    )


class TestRentRun:
    """Rent 10,000 on Region-West split EQUAL over Store-A and Store-B."""

    def test_completed_with_two_allocations(self, orchestrator):
        result = orchestrator.run(BUDGET_ID)

        assert result.status == RunStatus.COMPLETED
        assert [
            (r.target_cost_center_id, r.allocated_amount) for r in result.allocation.results
        ] == [(STORE_A, Decimal("5000.00")), (STORE_B, Decimal("5000.00"))]
        record = result.allocation.processed_rules[10]
        assert record.target_count == 2
        assert record.total_allocated == Decimal("10000")

    def test_allocated_line_items_materialized(self, orchestrator, rent_line):
        result = orchestrator.run(BUDGET_ID)

        assert len(result.allocated_line_items) == 2
        for item, target in zip(result.allocated_line_items, (STORE_A, STORE_B)):
            assert item.budget_id == BUDGET_ID
            assert item.cost_center_id == target
            assert item.gl_account_id == RENT
            assert item.fiscal_period_id == FEB
            assert item.original_amount == Decimal("5000.00")
            assert item.is_allocated
            assert item.allocation_source_line_id == rent_line.line_item_id
            assert item.allocation_percentage == Decimal("0.5")
            assert item.source_reference == f"ALLOC:10:{result.run_id}"
        assert [i.line_item_id for i in result.allocated_line_items] == [2, 3]
        assert result.source_line_ids_to_mark == frozenset({rent_line.line_item_id})

    def test_consolidated_budget_copy(self, orchestrator):
        result = orchestrator.run(BUDGET_ID)

        header = result.consolidated_budget
        assert header.budget_id == BUDGET_ID + 1
        assert header.code == "FY26-OP_CONSOL_20260201"
        assert header.name == "FY26 Operating - Consolidated"
        assert header.status == BudgetStatus.DRAFT
        assert header.base_budget_id == BUDGET_ID
        assert [
            (i.cost_center_id, i.original_amount) for i in result.consolidated_line_items
        ] == [(CORPORATE, Decimal("10000")), (REGION_WEST, Decimal("10000"))]
        assert all(i.budget_id == header.budget_id for i in result.consolidated_line_items)

    def test_consolidated_budget_optional(self, orchestrator):
        result = orchestrator.run(BUDGET_ID, create_consolidated_budget=False)

        assert result.consolidated_budget is None
        assert result.consolidated_line_items == ()
        assert len(result.allocated_line_items) == 2

    def test_hierarchy_and_consolidation_exposed(self, orchestrator):
        result = orchestrator.run(BUDGET_ID)

        assert len(result.hierarchy) == 5
        assert result.consolidation.total_final == Decimal("20000")

    def test_subtree_root(self, orchestrator):
        result = orchestrator.run(BUDGET_ID, root_cost_center_id=REGION_WEST)

        assert [n.cost_center_id for n in result.hierarchy] == [REGION_WEST, STORE_A, STORE_B]

    def test_unknown_root_raises(self, orchestrator):
        with pytest.raises(CostCenterNotFoundError):
            orchestrator.run(BUDGET_ID, root_cost_center_id=999)


class TestRunSummary:

    def test_steps_recorded(self, orchestrator):
        summary = orchestrator.run(BUDGET_ID).summary

        assert [s.name for s in summary.steps] == [
            "validate", "acquire_lock", "resolve_hierarchy",
            "consolidate", "allocate", "materialize",
        ]
        assert summary.step("allocate").rows == 2
        assert summary.step("resolve_hierarchy").rows == 5
        assert summary.step("materialize").rows == 4

    def test_to_dict_and_json(self, orchestrator):
        result = orchestrator.run(BUDGET_ID)
        data = result.summary.to_dict()

        assert data["runId"] == str(result.run_id)
        assert data["status"] == "completed"
        assert data["budgetId"] == BUDGET_ID
        assert data["steps"]["allocate"] == {"status": "completed", "rows": 2, "warnings": 0}
        assert data["durationMs"] == 0
        assert json.loads(result.summary.to_json()) == data

    def test_warnings_change_status(self, repository, run_lock, deterministic_clock, settings):
        rule = AllocationRule(
            rule_id=11, code="BROKEN", basis=AllocationBasis.EQUAL,
            source_cost_center_id=REGION_WEST,
            targets=(AllocationTarget(cost_center_code="MISSING"),),
        )
        repository = InMemoryPlanningRepository(
            budgets=[repository.get_budget(BUDGET_ID)],
            fiscal_periods=repository.get_fiscal_periods(),
            accounts=repository.get_gl_accounts(),
            cost_centers=repository.get_cost_centers(),
            line_items=repository.get_line_items(BUDGET_ID),
            rules=[rule],
        )
        result = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings,
        ).run(BUDGET_ID)

        assert result.status == RunStatus.COMPLETED_WITH_WARNINGS
        assert [w.code for w in result.summary.warnings] == ["UNRESOLVED_TARGET"]
        assert result.summary.to_dict()["steps"]["allocate"]["warnings"] == 1

    def test_unreconciled_intercompany_is_warning(
        self, budget, fiscal_periods, accounts, cost_centers,
        run_lock, deterministic_clock, settings,
    ):
        ic_accounts = tuple(a for a in accounts if not a.is_intercompany) + (
            GLAccount(IC_RECEIVABLE, "1800", "IC Receivable", AccountType.ASSET,
                      is_intercompany=True, consolidation_account_id=IC_PAYABLE),
            GLAccount(IC_PAYABLE, "2800", "IC Payable", AccountType.LIABILITY,
                      is_intercompany=True, consolidation_account_id=IC_RECEIVABLE),
        )
        repository = InMemoryPlanningRepository(
            budgets=[budget], fiscal_periods=fiscal_periods, accounts=ic_accounts,
            cost_centers=cost_centers,
            line_items=[
                line(1, STORE_A, IC_RECEIVABLE, "100"),
                line(2, STORE_B, IC_PAYABLE, "-80"),
            ],
            intercompany_partners={STORE_A: STORE_B},
        )
        result = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings,
        ).run(BUDGET_ID)

        assert result.status == RunStatus.COMPLETED_WITH_WARNINGS
        (warning,) = result.summary.warnings
        assert warning.code == "UNRECONCILED_INTERCOMPANY"
        assert warning.details["cost_center_id"] == STORE_A
        assert warning.details["partner_cost_center_id"] == STORE_B
        assert warning.details["unmatched_amount"] == Decimal("20")
        assert result.summary.step("consolidate").warning_count == 1
        assert result.summary.to_dict()["warnings"][0]["code"] == "UNRECONCILED_INTERCOMPANY"


class TestRuleSelection:

    def test_rule_id_filter(self, orchestrator):
        result = orchestrator.run(BUDGET_ID, rule_ids=[999])

        assert result.allocation.results == ()
        assert result.status == RunStatus.COMPLETED

    def test_rules_not_yet_effective_excluded(
        self, budget, fiscal_periods, accounts, cost_centers, rent_line, rent_rule,
        run_lock, deterministic_clock, settings,
    ):
        future = replace(rent_rule, effective_from=date(2026, 6, 1))
        repository = InMemoryPlanningRepository(
            budgets=[budget], fiscal_periods=fiscal_periods, accounts=accounts,
            cost_centers=cost_centers, line_items=[rent_line], rules=[future],
        )
        result = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings,
        ).run(BUDGET_ID)

        assert result.allocation.results == ()

    def test_period_filter(self, budget, fiscal_periods, accounts, cost_centers,
                           rent_rule, run_lock, deterministic_clock, settings):
        repository = InMemoryPlanningRepository(
            budgets=[budget], fiscal_periods=fiscal_periods, accounts=accounts,
            cost_centers=cost_centers, rules=[rent_rule],
            line_items=[
                line(1, REGION_WEST, RENT, "100"),
                line(2, REGION_WEST, RENT, "300", period=MAR),
            ],
        )
        result = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings,
        ).run(BUDGET_ID, fiscal_period_id=MAR)

        assert result.allocation.allocated_source_line_ids == frozenset({2})
        assert {a.fiscal_period_id for a in result.consolidation.amounts.values()} == {MAR}

    def test_closed_period_items_warned(self, budget, fiscal_periods, accounts, cost_centers,
                                        rent_rule, run_lock, deterministic_clock, settings):
        repository = InMemoryPlanningRepository(
            budgets=[budget], fiscal_periods=fiscal_periods, accounts=accounts,
            cost_centers=cost_centers, rules=[rent_rule],
            line_items=[line(1, REGION_WEST, RENT, "100", period=JAN)],
        )
        result = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings,
        ).run(BUDGET_ID)

        assert result.allocation.results == ()
        assert [w.code for w in result.summary.warnings] == ["CLOSED_PERIOD"]


class TestPersistence:

    def test_writer_saves_output(self, repository, run_lock, deterministic_clock, settings):
        orchestrator = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings, writer=repository,
        )
        result = orchestrator.run(BUDGET_ID)

        saved = repository.get_line_items(BUDGET_ID)
        assert len(saved) == 3
        assert saved[0].is_allocated
        assert repository.get_budget(result.consolidated_budget.budget_id) == (
            result.consolidated_budget
        )
        assert len(repository.get_line_items(result.consolidated_budget.budget_id)) == 2
        assert result.summary.step("persist").rows == 4

    def test_rerun_allocates_nothing_new(self, repository, run_lock, deterministic_clock, settings):
        orchestrator = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings, writer=repository,
        )
        orchestrator.run(BUDGET_ID)
        second = orchestrator.run(BUDGET_ID, create_consolidated_budget=False)

        assert second.allocation.results == ()
        assert len(repository.get_line_items(BUDGET_ID)) == 3

    def test_dry_run_materializes_nothing(self, repository, run_lock, deterministic_clock, settings):
        orchestrator = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings, writer=repository,
        )
        result = orchestrator.run(BUDGET_ID, dry_run=True)

        assert len(result.allocation.results) == 2
        assert result.allocated_line_items == ()
        assert result.source_line_ids_to_mark == frozenset()
        assert result.consolidated_budget is None
        assert result.summary.step("materialize").status == StepStatus.SKIPPED
        assert result.summary.step("persist") is None
        assert result.summary.dry_run
        assert len(repository.get_line_items(BUDGET_ID)) == 1
        assert not repository.get_line_items(BUDGET_ID)[0].is_allocated

    def test_failed_save_writes_nothing(
        self, budget, fiscal_periods, accounts, cost_centers, rent_line, rent_rule,
        run_lock, deterministic_clock, settings, captured_logs,
    ):
        repository = _FailingConsolidatedSave(
            budgets=[budget], fiscal_periods=fiscal_periods, accounts=accounts,
            cost_centers=cost_centers, line_items=[rent_line], rules=[rent_rule],
        )
        orchestrator = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings, writer=repository,
        )

        with pytest.raises(RunPersistenceError) as exc_info:
            orchestrator.run(BUDGET_ID)

        assert isinstance(exc_info.value.cause, RuntimeError)
        assert repository.get_line_items(BUDGET_ID) == (rent_line,)
        assert repository.get_budget(BUDGET_ID + 1) is None
        assert repository.get_line_items(BUDGET_ID + 1) == ()
        failed = [r for r in captured_logs() if r["message"] == "allocation_run_failed"]
        assert failed[0]["error_code"] == "PERSIST_FAILED"
        run_lock.release(run_lock.acquire(LOCK_RESOURCE, timeout=0))


class TestValidation:

    def test_unknown_budget(self, orchestrator):
        with pytest.raises(BudgetNotFoundError):
            orchestrator.run(404)

    @pytest.mark.parametrize("status", [
        BudgetStatus.DRAFT, BudgetStatus.SUBMITTED, BudgetStatus.ARCHIVED,
    ])
    def test_status_not_runnable(self, budget, run_lock, deterministic_clock, settings, status):
        repository = InMemoryPlanningRepository(budgets=[replace(budget, status=status)])
        orchestrator = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings,
        )

        with pytest.raises(BudgetStatusError) as exc_info:
            orchestrator.run(BUDGET_ID)
        assert exc_info.value.status == status.value

    def test_locked_budget_runs(self, budget, fiscal_periods, run_lock, deterministic_clock, settings):
        repository = InMemoryPlanningRepository(
            budgets=[replace(budget, status=BudgetStatus.LOCKED)],
            fiscal_periods=fiscal_periods,
        )
        result = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock, settings=settings,
        ).run(BUDGET_ID)

        assert result.status == RunStatus.COMPLETED

    def test_unknown_period(self, orchestrator):
        with pytest.raises(PeriodNotFoundError):
            orchestrator.run(BUDGET_ID, fiscal_period_id=209901)

    def test_period_outside_budget(self, orchestrator):
        with pytest.raises(PeriodOutOfRangeError):
            orchestrator.run(BUDGET_ID, fiscal_period_id=APR)

    def test_closed_period(self, orchestrator):
        with pytest.raises(ClosedPeriodError):
            orchestrator.run(BUDGET_ID, fiscal_period_id=JAN)

    def test_failure_logged(self, orchestrator, captured_logs):
        with pytest.raises(BudgetNotFoundError):
            orchestrator.run(404)

        failed = [r for r in captured_logs() if r["message"] == "allocation_run_failed"]
        assert failed[0]["error_code"] == "BUDGET_NOT_FOUND"
        assert failed[0]["budget_id"] == "404"


class TestLocking:

    def test_exclusive_run_times_out_when_budget_held(self, orchestrator, run_lock):
        with run_lock.hold(LOCK_RESOURCE, exclusive=False):
            with pytest.raises(LockTimeoutError):
                orchestrator.run(BUDGET_ID)

    def test_shared_runs_coexist(self, orchestrator, run_lock):
        with run_lock.hold(LOCK_RESOURCE, exclusive=False):
            result = orchestrator.run(BUDGET_ID, concurrency_mode=ConcurrencyMode.SHARED)

        assert result.summary.concurrency_mode == ConcurrencyMode.SHARED

    def test_no_lock_mode_skips_lock(self, orchestrator, run_lock):
        with run_lock.hold(LOCK_RESOURCE, exclusive=True):
            result = orchestrator.run(BUDGET_ID, concurrency_mode=ConcurrencyMode.NONE)

        assert result.summary.step("acquire_lock").status == StepStatus.SKIPPED

    def test_lock_released_after_run(self, orchestrator, run_lock):
        orchestrator.run(BUDGET_ID)

        run_lock.release(run_lock.acquire(LOCK_RESOURCE, timeout=0))

    def test_lock_released_after_cancellation(
        self, budget, fiscal_periods, accounts, cost_centers, rent_rule,
        run_lock, deterministic_clock,
    ):
        repository = InMemoryPlanningRepository(
            budgets=[budget], fiscal_periods=fiscal_periods, accounts=accounts,
            cost_centers=cost_centers, rules=[rent_rule],
            line_items=[
                line(1, REGION_WEST, RENT, "100"),
                line(2, REGION_WEST, RENT, "200"),
            ],
        )
        orchestrator = AllocationRunOrchestrator(
            repository, run_lock, deterministic_clock,
            settings=EngineSettings(allocation=AllocationSettings(batch_size=1)),
            writer=repository,
        )

        with pytest.raises(AllocationCancelledError):
            orchestrator.run(BUDGET_ID, should_cancel=lambda: True)

        run_lock.release(run_lock.acquire(LOCK_RESOURCE, timeout=0))
        assert not any(i.is_allocated for i in repository.get_line_items(BUDGET_ID))


class TestLeaseRenewal:
    """A run on the SQL lock that outlives the lease TTL keeps its lease."""

    @pytest.fixture
    def chained_repository(
        self, budget, fiscal_periods, accounts, cost_centers, rent_line, rent_rule,
    ):
        supplies = replace(
            rent_rule, rule_id=11, code="SUP-EQ",
            source_account_pattern="6200", depends_on_rule_id=10,
        )
        sales = replace(
            rent_rule, rule_id=12, code="SALES-EQ",
            source_account_pattern="4000", depends_on_rule_id=11,
        )
        return InMemoryPlanningRepository(
            budgets=[budget], fiscal_periods=fiscal_periods, accounts=accounts,
            cost_centers=cost_centers,
            line_items=[
                rent_line,
                line(2, REGION_WEST, SUPPLIES, "600"),
                line(3, REGION_WEST, SALES, "400"),
            ],
            rules=[rent_rule, supplies, sales],
        )

    def test_lease_renewed_between_passes(
        self, chained_repository, lock_session_factory, deterministic_clock, settings,
    ):
        lock = SqlRunLock(lock_session_factory, clock=deterministic_clock, lease_ttl=60)
        competitor = SqlRunLock(lock_session_factory, clock=deterministic_clock, lease_ttl=60)
        blocked = []

        def slow_pass():
            deterministic_clock.advance(40)
            try:
                competitor.release(competitor.acquire(LOCK_RESOURCE, timeout=0))
            except LockTimeoutError:
                blocked.append(True)
            else:
                blocked.append(False)
            return False

        result = AllocationRunOrchestrator(
            chained_repository, lock, deterministic_clock, settings=settings,
        ).run(BUDGET_ID, should_cancel=slow_pass)

        assert {r.rule_id for r in result.allocation.results} == {10, 11, 12}
        assert len(blocked) >= 2
        assert all(blocked)
        competitor.release(competitor.acquire(LOCK_RESOURCE, timeout=0))

    def test_lost_lease_aborts_before_write(
        self, chained_repository, lock_session_factory, deterministic_clock, settings,
        captured_logs,
    ):
        lock = SqlRunLock(lock_session_factory, clock=deterministic_clock, lease_ttl=60)
        intruder = SqlRunLock(lock_session_factory, clock=deterministic_clock, lease_ttl=60)
        taken = []

        def stalled_pass():
            if not taken:
                deterministic_clock.advance(61)
                taken.append(intruder.acquire(LOCK_RESOURCE, timeout=0))
            return False

        orchestrator = AllocationRunOrchestrator(
            chained_repository, lock, deterministic_clock,
            settings=settings, writer=chained_repository,
        )
        with pytest.raises(LeaseNotHeldError):
            orchestrator.run(BUDGET_ID, should_cancel=stalled_pass)

        saved = chained_repository.get_line_items(BUDGET_ID)
        assert len(saved) == 3
        assert not any(i.is_allocated for i in saved)
        records = captured_logs()
        assert "run_lock_lease_lost" in [r["message"] for r in records]
        failed = next(r for r in records if r["message"] == "allocation_run_failed")
        assert failed["error_code"] == "LEASE_NOT_HELD"
        intruder.release(taken[0])


class TestRunLogging:

    def test_run_context_on_every_record(self, orchestrator, captured_logs):
        result = orchestrator.run(BUDGET_ID)

        records = [r for r in captured_logs() if r["message"].startswith("allocation_run")]
        assert {r["message"] for r in records} >= {
            "allocation_run_started", "allocation_run_step", "allocation_run_completed",
        }
        for record in records:
            assert record["run_id"] == str(result.run_id)
            assert record["budget_id"] == str(BUDGET_ID)

        completed = next(r for r in records if r["message"] == "allocation_run_completed")
        assert completed["total_allocated"] == "10000.00"
