"""
Module: budget_engines.allocation_factor
Responsibility:
    Compute the fraction of a source cost center's amount that a target
    cost center receives under a driver-based allocation basis.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Works over reference
    data snapshots handed in by the caller.

Invariants enforced:
    - Never divides by zero: a missing or zero source total, or a missing
      target value, yields a factor of 0.
    - Factors are quantized half-up to ``precision`` decimal places (10).

Failure modes:
    - UnsupportedBasisError for a basis with no driver computation
      (including FIXED_PERCENTAGE, whose fraction lives on the rule or
      target, not in driver data).

Usage:
    calc = AllocationFactorCalculator(cost_centers, accounts, line_items)
    factor = calc.factor(
        source_cost_center_id=10, target_cost_center_id=11,
        basis=AllocationBasis.EQUAL, fiscal_period_id=202601,
    )
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal

from budget_kernel.domain.types import (
    AccountType,
    AllocationBasis,
    BudgetLineItem,
    CostCenter,
    GLAccount,
)
from budget_kernel.exceptions import UnsupportedBasisError
from budget_kernel.logging_config import get_logger

logger = get_logger("engines.allocation_factor")

_ZERO = Decimal("0")

DEFAULT_FACTOR_PRECISION = 10


class AllocationFactorCalculator:
    """
    Driver-based allocation factors.

    Contract:
        ``factor`` is a pure function of the snapshots passed to the
        constructor and its arguments.
    Guarantees:
        - EQUAL: 1 / (number of active direct children of the source).
        - HEADCOUNT: target weight / sum of weights of the source's active
          direct children.
        - REVENUE / EXPENSE: target's period amount on R / X accounts over
          the same sum across the source and its direct children.
    Non-goals:
        - Factors over a source's children are not guaranteed to sum to 1.
    """

    def __init__(
        self,
        cost_centers: Iterable[CostCenter],
        accounts: Iterable[GLAccount],
        line_items: Iterable[BudgetLineItem],
        precision: int = DEFAULT_FACTOR_PRECISION,
    ):
        self._cost_centers = {cc.cost_center_id: cc for cc in cost_centers}
        self._children: dict[int, list[CostCenter]] = defaultdict(list)
        for cc in self._cost_centers.values():
            if cc.parent_id is not None:
                self._children[cc.parent_id].append(cc)
        self._account_types = {a.account_id: a.account_type for a in accounts}
        self._items_by_cc_period: dict[tuple[int, int], list[BudgetLineItem]] = (
            defaultdict(list)
        )
        for item in line_items:
            self._items_by_cc_period[(item.cost_center_id, item.fiscal_period_id)].append(item)
        self._quantum = Decimal(1).scaleb(-precision)

    def factor(
        self,
        source_cost_center_id: int,
        target_cost_center_id: int,
        basis: AllocationBasis,
        fiscal_period_id: int,
        budget_id: int | None = None,
    ) -> Decimal:
        """
        Allocation factor for one (source, target) pair.

        Raises:
            UnsupportedBasisError: ``basis`` has no driver computation.
        """
        source_total: Decimal | None
        target_value: Decimal | None

        match basis:
            case AllocationBasis.EQUAL:
                child_count = len(self._active_children(source_cost_center_id))
                if child_count == 0:
                    return _ZERO
                return self._quantize(Decimal(1) / Decimal(child_count))
            case AllocationBasis.HEADCOUNT:
                children = self._active_children(source_cost_center_id)
                source_total = (
                    sum((cc.allocation_weight for cc in children), _ZERO)
                    if children else None
                )
                target = self._cost_centers.get(target_cost_center_id)
                target_value = (
                    target.allocation_weight
                    if target is not None and target.is_active else None
                )
            case AllocationBasis.REVENUE | AllocationBasis.EXPENSE:
                account_type = (
                    AccountType.REVENUE if basis == AllocationBasis.REVENUE
                    else AccountType.EXPENSE
                )
                scope = [source_cost_center_id] + [
                    cc.cost_center_id
                    for cc in self._children.get(source_cost_center_id, ())
                ]
                source_total = self._sum_amounts(
                    scope, account_type, fiscal_period_id, budget_id,
                )
                target_value = self._sum_amounts(
                    [target_cost_center_id], account_type, fiscal_period_id, budget_id,
                )
            case _:
                raise UnsupportedBasisError(basis)

        if source_total is None or source_total == 0 or target_value is None:
            logger.debug("allocation_factor_zero", extra={
                "basis": basis.value,
                "source_cost_center_id": source_cost_center_id,
                "target_cost_center_id": target_cost_center_id,
                "source_total": None if source_total is None else str(source_total),
            })
            return _ZERO
        return self._quantize(target_value / source_total)

    def _active_children(self, cost_center_id: int) -> list[CostCenter]:
        return [cc for cc in self._children.get(cost_center_id, ()) if cc.is_active]

    def _sum_amounts(
        self,
        cost_center_ids: list[int],
        account_type: AccountType,
        fiscal_period_id: int,
        budget_id: int | None,
    ) -> Decimal | None:
        """Sum of final amounts, or None when no line item qualifies."""
        total: Decimal | None = None
        for cc_id in cost_center_ids:
            for item in self._items_by_cc_period.get((cc_id, fiscal_period_id), ()):
                if budget_id is not None and item.budget_id != budget_id:
                    continue
                if self._account_types.get(item.gl_account_id) != account_type:
                    continue
                total = item.final_amount if total is None else total + item.final_amount
        return total

    def _quantize(self, value: Decimal) -> Decimal:
        return value.quantize(self._quantum, rounding=ROUND_HALF_UP)
