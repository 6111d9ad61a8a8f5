"""
Pytest fixtures for the budget engine test suite.

Provides:
- Structured logging configured once per session, LogContext cleared per test
- ``captured_logs`` for asserting on JSON log records
- A deterministic clock and a small planning data set (Region-West with
  two stores) shared by engine and service tests
- An in-memory SQLite session factory for the SQL run lock
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import budget_kernel.models  # noqa: F401  (registers run lock tables)
from budget_kernel.db.base import Base
from budget_kernel.domain.clock import DeterministicClock
from budget_kernel.domain.types import (
    AccountType,
    AllocationBasis,
    AllocationRule,
    AllocationTarget,
    BudgetHeader,
    BudgetLineItem,
    BudgetStatus,
    CostCenter,
    FiscalPeriod,
    GLAccount,
)
from budget_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture budget_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            resolver.resolve(as_of=date(2026, 2, 1))
            logs = captured_logs()
            assert any(r["message"] == "hierarchy_resolved" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("budget_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Clock
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(fixed_time=datetime(2026, 2, 1, 12, 0, 0, tzinfo=timezone.utc))


# =============================================================================
# Planning data: Corporate > Region-West > Store-A / Store-B
# =============================================================================

CORPORATE = 1
REGION_WEST = 2
STORE_A = 3
STORE_B = 4
REGION_EAST = 5

RENT = 100
SALES = 200
SUPPLIES = 300
IC_RECEIVABLE = 400
IC_PAYABLE = 500

JAN = 202601
FEB = 202602
MAR = 202603

BUDGET_ID = 7


@pytest.fixture
def cost_centers() -> tuple[CostCenter, ...]:
    return (
        CostCenter(CORPORATE, "CORP", "Corporate"),
        CostCenter(REGION_WEST, "RW", "Region-West", parent_id=CORPORATE,
                   allocation_weight=Decimal("0.5")),
        CostCenter(STORE_A, "RW-STORE-A", "Store-A", parent_id=REGION_WEST,
                   allocation_weight=Decimal("0.6")),
        CostCenter(STORE_B, "RW-STORE-B", "Store-B", parent_id=REGION_WEST,
                   allocation_weight=Decimal("0.4")),
        CostCenter(REGION_EAST, "RE", "Region-East", parent_id=CORPORATE,
                   allocation_weight=Decimal("0.5")),
    )


@pytest.fixture
def accounts() -> tuple[GLAccount, ...]:
    return (
        GLAccount(RENT, "6100", "Rent", AccountType.EXPENSE),
        GLAccount(SALES, "4000", "Sales", AccountType.REVENUE),
        GLAccount(SUPPLIES, "6200", "Supplies", AccountType.EXPENSE),
        GLAccount(IC_RECEIVABLE, "1800", "IC Receivable", AccountType.ASSET,
                  is_intercompany=True),
        GLAccount(IC_PAYABLE, "2800", "IC Payable", AccountType.LIABILITY,
                  is_intercompany=True),
    )


@pytest.fixture
def fiscal_periods() -> tuple[FiscalPeriod, ...]:
    return (
        FiscalPeriod(JAN, 2026, 1, date(2026, 1, 1), date(2026, 1, 31), is_closed=True),
        FiscalPeriod(FEB, 2026, 2, date(2026, 2, 1), date(2026, 2, 28)),
        FiscalPeriod(MAR, 2026, 3, date(2026, 3, 1), date(2026, 3, 31)),
    )


@pytest.fixture
def budget() -> BudgetHeader:
    return BudgetHeader(
        budget_id=BUDGET_ID,
        code="FY26-OP",
        name="FY26 Operating",
        status=BudgetStatus.APPROVED,
        fiscal_year=2026,
        start_period_id=JAN,
        end_period_id=MAR,
    )


def line(line_item_id, cost_center_id, gl_account_id, amount, period=FEB, **kwargs):
    """Shorthand for a budget line item of BUDGET_ID."""
    return BudgetLineItem(
        line_item_id=line_item_id,
        budget_id=kwargs.pop("budget_id", BUDGET_ID),
        gl_account_id=gl_account_id,
        cost_center_id=cost_center_id,
        fiscal_period_id=period,
        original_amount=Decimal(amount),
        **kwargs,
    )


@pytest.fixture
def rent_line() -> BudgetLineItem:
    return line(1, REGION_WEST, RENT, "10000")


@pytest.fixture
def rent_rule() -> AllocationRule:
    return AllocationRule(
        rule_id=10,
        code="RENT-EQ",
        name="Region rent to stores",
        basis=AllocationBasis.EQUAL,
        source_cost_center_id=REGION_WEST,
        source_account_pattern="61%",
        targets=(
            AllocationTarget(cost_center_code="RW-STORE-A"),
            AllocationTarget(cost_center_code="RW-STORE-B"),
        ),
    )


# =============================================================================
# SQL run lock database
# =============================================================================


@pytest.fixture
def lock_session_factory():
    """SQLite in-memory database shared across threads for the lease table."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()
