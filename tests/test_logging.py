"""
Tests for structured run logging (budget_kernel/logging_config.py).

Covers:
- Every record emitted during a run carries that run's identifiers
- Engine values in ``extra``: Decimal totals, enums, id sets, warnings
- The ``error`` block for budget engine exceptions
- Run context isolation between threads
- Handler installation and level names
"""

import json
import logging
import threading
from decimal import Decimal
from io import StringIO

import pytest

from budget_kernel.domain.types import AllocationWarning
from budget_kernel.exceptions import (
    LockTimeoutError,
    RunPersistenceError,
    UnresolvedTargetError,
)
from budget_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)
from budget_services import (
    AllocationRunOrchestrator,
    InMemoryPlanningRepository,
    InProcessRunLock,
    RunStatus,
)
from tests.conftest import BUDGET_ID

logger = get_logger("services.test_logging")


@pytest.fixture
def orchestrator(budget, fiscal_periods, accounts, cost_centers, rent_line, rent_rule,
                 deterministic_clock):
    repository = InMemoryPlanningRepository(
        budgets=[budget], fiscal_periods=fiscal_periods, accounts=accounts,
        cost_centers=cost_centers, line_items=[rent_line], rules=[rent_rule],
    )
    return AllocationRunOrchestrator(
        repository, InProcessRunLock(clock=deterministic_clock), deterministic_clock,
    )


@pytest.fixture
def fresh_logging():
    """Uninstalled logging for the duration of one test, restored afterwards."""
    reset_logging()
    yield
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _read(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestRunRecords:

    def test_engine_and_service_records_carry_run_ids(self, orchestrator, captured_logs):
        result = orchestrator.run(BUDGET_ID)

        records = captured_logs()
        loggers = {r["logger"] for r in records}
        assert "budget_kernel.engines.hierarchy" in loggers
        assert "budget_kernel.engines.allocation_scheduler" in loggers
        assert "budget_kernel.services.run_lock" in loggers
        for record in records:
            assert record["run_id"] == str(result.run_id)
            assert record["correlation_id"] == str(result.run_id)
            assert record["budget_id"] == str(BUDGET_ID)

    def test_context_released_after_run(self, orchestrator, captured_logs):
        orchestrator.run(BUDGET_ID)
        logger.info("after_run")

        after = next(r for r in captured_logs() if r["message"] == "after_run")
        assert "run_id" not in after
        assert "budget_id" not in after

    def test_pass_record_fields(self, orchestrator, captured_logs):
        orchestrator.run(BUDGET_ID)

        (pass_record,) = [
            r for r in captured_logs() if r["message"] == "allocation_pass_completed"
        ]
        assert pass_record["iteration"] == 1
        assert pass_record["results_produced"] == 2
        assert pass_record["rules_completed"] == [10]


class TestPayloadValues:

    def test_decimal_enum_and_id_set(self, captured_logs):
        logger.info("run_totals", extra={
            "total_allocated": Decimal("10000.00"),
            "status": RunStatus.COMPLETED_WITH_WARNINGS,
            "source_line_ids": frozenset({3, 1, 2}),
        })

        (record,) = captured_logs()
        assert record["total_allocated"] == "10000.00"
        assert record["status"] == "completed_with_warnings"
        assert record["source_line_ids"] == [1, 2, 3]

    def test_allocation_warning_serialized(self, captured_logs):
        warning = AllocationWarning.from_error(UnresolvedTargetError(10, "RW-STORE-Z"))
        logger.warning("allocation_warning", extra={"warning": warning})

        (record,) = captured_logs()
        assert record["warning"] == {
            "code": "UNRESOLVED_TARGET",
            "message": "Rule 10 target RW-STORE-Z is not an active cost center",
            "rule_id": 10,
            "line_item_id": None,
        }

    def test_run_summary_serialized(self, orchestrator, captured_logs):
        summary = orchestrator.run(BUDGET_ID).summary
        logger.info("run_summary", extra={"summary": summary})

        record = next(r for r in captured_logs() if r["message"] == "run_summary")
        assert record["summary"] == json.loads(summary.to_json())


class TestErrorBlock:

    def test_budget_error_code_and_details(self, captured_logs):
        try:
            raise LockTimeoutError(f"cost_allocation:{BUDGET_ID}", False, 0.0)
        except LockTimeoutError:
            logger.warning("run_lock_timeout", exc_info=True)

        (record,) = captured_logs()
        assert record["error"] == {
            "type": "LockTimeoutError",
            "message": "Timed out after 0.0s acquiring shared lock on cost_allocation:7",
            "code": "LOCK_TIMEOUT",
            "details": {
                "resource_name": "cost_allocation:7",
                "exclusive": False,
                "timeout": 0.0,
            },
        }
        assert "LockTimeoutError" in record["traceback"]

    def test_wrapped_writer_failure(self, captured_logs):
        try:
            raise RunPersistenceError(BUDGET_ID, OSError("disk full"))
        except RunPersistenceError:
            logger.error("allocation_run_failed", exc_info=True)

        error = captured_logs()[0]["error"]
        assert error["code"] == "PERSIST_FAILED"
        assert error["details"] == {"budget_id": BUDGET_ID, "cause": "disk full"}

    def test_plain_exception_has_no_code(self, captured_logs):
        try:
            raise ValueError("allocation.batch_size must be positive or null")
        except ValueError:
            logger.error("settings_invalid", exc_info=True)

        error = captured_logs()[0]["error"]
        assert error == {
            "type": "ValueError",
            "message": "allocation.batch_size must be positive or null",
        }


class TestLogContext:

    def test_bind_nests_and_restores(self):
        with LogContext.bind(run_id="run-1", budget_id=BUDGET_ID):
            with LogContext.bind(actor_id="planner"):
                assert LogContext.get_all() == {
                    "run_id": "run-1", "budget_id": "7", "actor_id": "planner",
                }
            assert LogContext.get_all() == {"run_id": "run-1", "budget_id": "7"}
        assert LogContext.get_all() == {}

    def test_none_values_skipped(self):
        LogContext.set(run_id="run-1")
        LogContext.set(run_id=None, budget_id=BUDGET_ID)

        assert LogContext.get_all() == {"run_id": "run-1", "budget_id": "7"}

    def test_unknown_field_rejected(self):
        with pytest.raises(TypeError, match="rule_id"):
            with LogContext.bind(run_id="run-1", rule_id=10):
                pass
        assert LogContext.get_all() == {}

    def test_threads_keep_their_own_run(self, captured_logs):
        barrier = threading.Barrier(2)
        LogContext.set(run_id="main")

        def worker(run_id):
            with LogContext.bind(run_id=run_id, budget_id=BUDGET_ID):
                barrier.wait(timeout=5)
                logger.info("worker_step", extra={"worker": run_id})

        threads = [threading.Thread(target=worker, args=(f"run-{i}",)) for i in (1, 2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        records = [r for r in captured_logs() if r["message"] == "worker_step"]
        assert len(records) == 2
        for record in records:
            assert record["run_id"] == record["worker"]
        assert LogContext.get_all() == {"run_id": "main"}


class TestConfigureLogging:

    def test_second_handler_ignored(self, fresh_logging):
        first = logging.StreamHandler(StringIO())
        configure_logging(handler=first)
        configure_logging(handler=logging.StreamHandler(StringIO()))

        assert logging.getLogger("budget_kernel").handlers == [first]
        assert isinstance(first.formatter, StructuredFormatter)

    def test_level_name(self, fresh_logging):
        stream = StringIO()
        configure_logging(level="warning", stream=stream)

        logger.info("allocation_started")
        logger.warning("allocation_cycle_detected", extra={"rule_ids": [1, 2, 1]})

        assert [r["message"] for r in _read(stream)] == ["allocation_cycle_detected"]

    def test_reset_removes_handler(self, fresh_logging):
        stream = StringIO()
        configure_logging(stream=stream)
        reset_logging()

        logger.warning("run_lock_timeout")
        assert stream.getvalue() == ""

    def test_logger_names(self):
        assert get_logger("services.run_lock").name == "budget_kernel.services.run_lock"
        assert get_logger("budget_kernel.db.engine").name == "budget_kernel.db.engine"
