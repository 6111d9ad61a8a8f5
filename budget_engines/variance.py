"""
budget_engines.variance -- Budget-versus-budget variance comparison.

Responsibility:
    Compare two budget versions (e.g. an approved budget against a
    forecast or a consolidated copy) keyed by (account, cost center,
    period), producing the variance amount, variance percentage, a
    favorability status and a threshold flag for every key present in
    either version.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Full outer comparison: a key missing from one version counts as 0
      on that side.
    - variance = comparison - base; percentage is None when base is 0.
    - Purity: no clock access, no I/O.

Failure modes:
    - Division-by-zero safe: see above.

Usage:
    calculator = BudgetVarianceCalculator(accounts, fiscal_periods)
    lines = calculator.compare(
        base_budget_id=7, comparison_budget_id=8, line_items=items,
        threshold_pct=Decimal("10"),
    )
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from budget_engines.tracer import traced_engine
from budget_kernel.domain.types import (
    AccountType,
    BudgetLineItem,
    ConsolidatedKey,
    FiscalPeriod,
    GLAccount,
)
from budget_kernel.logging_config import get_logger

logger = get_logger("engines.variance")

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")
PERCENT_QUANTUM = Decimal("0.0001")
DEFAULT_THRESHOLD_PCT = Decimal("100")


class VarianceStatus(str, Enum):
    FAVORABLE = "favorable"  # Comparison above base
    UNFAVORABLE = "unfavorable"
    ON_TARGET = "on_target"


@dataclass(frozen=True)
class BudgetVarianceLine:
    gl_account_id: int
    cost_center_id: int
    fiscal_period_id: int
    budget_amount: Decimal
    comparison_amount: Decimal
    variance_amount: Decimal
    variance_percentage: Decimal | None
    status: VarianceStatus
    exceeds_threshold: bool


class BudgetVarianceCalculator:
    """
    Pure calculator for budget variance.

    Contract:
        No I/O, fully deterministic.  Account and period reference data is
        passed at construction.
    Guarantees:
        - Lines are ordered by (account, cost center, period).
        - Keys whose account or period is unknown are dropped.
    Non-goals:
        - Does not decide favorability per account type; a positive
          variance is always FAVORABLE.
    """

    def __init__(
        self,
        accounts: Iterable[GLAccount],
        fiscal_periods: Iterable[FiscalPeriod],
    ):
        self._accounts = {a.account_id: a for a in accounts}
        self._periods = {p.fiscal_period_id: p for p in fiscal_periods}

    @traced_engine(
        "budget_variance", "1.0",
        fingerprint_fields=(
            "base_budget_id", "comparison_budget_id", "fiscal_year",
            "cost_center_id", "account_type", "threshold_pct",
        ),
    )
    def compare(
        self,
        *,
        base_budget_id: int,
        comparison_budget_id: int,
        line_items: Iterable[BudgetLineItem],
        fiscal_year: int | None = None,
        cost_center_id: int | None = None,
        account_type: AccountType | None = None,
        threshold_pct: Decimal | None = None,
    ) -> tuple[BudgetVarianceLine, ...]:
        """
        Variance lines for every key in either budget.

        ``exceeds_threshold`` is True when |variance %| exceeds
        ``threshold_pct`` (100 when not given).  Lines with no percentage
        never exceed the threshold.
        """
        t0 = time.monotonic()
        threshold = DEFAULT_THRESHOLD_PCT if threshold_pct is None else threshold_pct

        base: dict[ConsolidatedKey, Decimal] = defaultdict(lambda: _ZERO)
        comparison: dict[ConsolidatedKey, Decimal] = defaultdict(lambda: _ZERO)
        for item in line_items:
            key = ConsolidatedKey(item.gl_account_id, item.cost_center_id, item.fiscal_period_id)
            if item.budget_id == base_budget_id:
                base[key] += item.final_amount
            if item.budget_id == comparison_budget_id:
                comparison[key] += item.final_amount

        lines: list[BudgetVarianceLine] = []
        for key in sorted(set(base) | set(comparison)):
            account = self._accounts.get(key.gl_account_id)
            period = self._periods.get(key.fiscal_period_id)
            if account is None or period is None:
                continue
            if fiscal_year is not None and period.fiscal_year != fiscal_year:
                continue
            if cost_center_id is not None and key.cost_center_id != cost_center_id:
                continue
            if account_type is not None and account.account_type != account_type:
                continue

            budget_amount = base.get(key, _ZERO)
            comparison_amount = comparison.get(key, _ZERO)
            variance = comparison_amount - budget_amount
            percentage = None
            if budget_amount != 0:
                percentage = (variance / budget_amount * _HUNDRED).quantize(
                    PERCENT_QUANTUM, rounding=ROUND_HALF_UP,
                )

            if variance > 0:
                status = VarianceStatus.FAVORABLE
            elif variance < 0:
                status = VarianceStatus.UNFAVORABLE
            else:
                status = VarianceStatus.ON_TARGET

            lines.append(BudgetVarianceLine(
                gl_account_id=key.gl_account_id,
                cost_center_id=key.cost_center_id,
                fiscal_period_id=key.fiscal_period_id,
                budget_amount=budget_amount,
                comparison_amount=comparison_amount,
                variance_amount=variance,
                variance_percentage=percentage,
                status=status,
                exceeds_threshold=percentage is not None and abs(percentage) > threshold,
            ))

        logger.info("budget_variance_computed", extra={
            "base_budget_id": base_budget_id,
            "comparison_budget_id": comparison_budget_id,
            "line_count": len(lines),
            "exceeding_count": sum(1 for line in lines if line.exceeds_threshold),
            "duration_ms": round((time.monotonic() - t0) * 1000, 2),
        })
        return tuple(lines)
