"""
budget_kernel.domain.types -- Pure frozen dataclasses for the planning domain.

ZERO I/O.  Every value the engines consume or produce is defined here:
the organizational tree (``CostCenter``), the chart of accounts
(``GLAccount``), budgets and their line items, allocation rules, and the
derived per-run artifacts (``HierarchyNode``, ``ConsolidatedAmount``,
``AllocationResult``, ``ProcessedRuleRecord``, ``AllocationWarning``).

Invariants enforced:
    - All DTOs are frozen dataclasses; collections are tuples.
    - Monetary amounts and weights are ``Decimal``; ``float`` is rejected
      at construction time.
    - ``CostCenter.allocation_weight`` lies in [0, 1].
    - ``AllocationTarget`` names a cost center by id or by code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple

_ZERO = Decimal("0")
_ONE = Decimal("1")


def _require_decimal(owner: str, name: str, value: Any) -> None:
    if value is not None and not isinstance(value, Decimal):
        raise TypeError(
            f"{owner}.{name} must be Decimal, got {type(value).__name__}"
        )


# =============================================================================
# Enums
# =============================================================================


class AccountType(str, Enum):
    """General-ledger account classification (single-letter ledger codes)."""

    ASSET = "A"
    LIABILITY = "L"
    EQUITY = "E"
    REVENUE = "R"
    EXPENSE = "X"


class BudgetStatus(str, Enum):
    """Budget approval lifecycle."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    LOCKED = "locked"
    ARCHIVED = "archived"


class AllocationBasis(str, Enum):
    """Driver used to compute an allocation factor."""

    HEADCOUNT = "headcount"
    REVENUE = "revenue"
    EXPENSE = "expense"
    EQUAL = "equal"
    FIXED_PERCENTAGE = "fixed_percentage"


class RoundingMethod(str, Enum):
    """How an allocated amount is rounded to the rule precision."""

    NEAREST = "nearest"  # Half away from zero
    UP = "up"  # Toward +infinity
    DOWN = "down"  # Toward -infinity
    NONE = "none"  # Unrounded


class RuleType(str, Enum):
    """Informational rule classification; all types are processed alike."""

    DIRECT = "direct"
    STEP_DOWN = "step_down"
    RECIPROCAL = "reciprocal"
    ACTIVITY_BASED = "activity_based"


class WorkItemStatus(str, Enum):
    """State of one (rule, source line item) pair in the allocation queue."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"  # Terminal, never retried


# =============================================================================
# Reference data
# =============================================================================


@dataclass(frozen=True)
class CostCenter:
    """A node in the organizational tree.

    ``parent_id`` of None marks a root.  The parent graph is not trusted
    to be acyclic; the hierarchy resolver guards against cycles.
    Effectivity is half-open: ``[effective_from, effective_to)``.
    """

    cost_center_id: int
    code: str
    name: str
    parent_id: int | None = None
    is_active: bool = True
    effective_from: date = date.min
    effective_to: date | None = None
    allocation_weight: Decimal = _ONE

    def __post_init__(self) -> None:
        _require_decimal("CostCenter", "allocation_weight", self.allocation_weight)
        if not (_ZERO <= self.allocation_weight <= _ONE):
            raise ValueError(
                f"Cost center {self.code} allocation_weight "
                f"{self.allocation_weight} outside [0, 1]"
            )

    def is_effective(self, as_of: date) -> bool:
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or as_of < self.effective_to

    def is_eligible(self, as_of: date, include_inactive: bool = False) -> bool:
        """Active (unless inactive ones are included) and effective on ``as_of``."""
        return (include_inactive or self.is_active) and self.is_effective(as_of)


@dataclass(frozen=True)
class GLAccount:
    """General-ledger account.

    ``consolidation_account_id`` names the partner account whose balances
    offset this one during intercompany elimination.
    """

    account_id: int
    account_number: str
    name: str
    account_type: AccountType
    is_intercompany: bool = False
    consolidation_account_id: int | None = None
    is_budgetable: bool = True
    is_active: bool = True
    currency: str = "USD"


@dataclass(frozen=True)
class FiscalPeriod:
    fiscal_period_id: int
    fiscal_year: int
    fiscal_month: int
    start_date: date
    end_date: date
    is_closed: bool = False

    def __post_init__(self) -> None:
        if self.end_date < self.start_date:
            raise ValueError(
                f"Fiscal period {self.fiscal_period_id} ends before it starts"
            )


@dataclass(frozen=True)
class BudgetHeader:
    """Budget version with its approval status and period range."""

    budget_id: int
    code: str
    name: str
    status: BudgetStatus
    fiscal_year: int
    start_period_id: int
    end_period_id: int
    base_budget_id: int | None = None
    budget_type: str = "operating"

    def covers_period(self, fiscal_period_id: int) -> bool:
        return self.start_period_id <= fiscal_period_id <= self.end_period_id


@dataclass(frozen=True)
class BudgetLineItem:
    """One budget fact: amount for (account, cost center, period).

    Source line items are never mutated by a run; allocations produce new
    line items with ``is_allocated`` set and a back-reference to the
    source through ``allocation_source_line_id``.
    """

    line_item_id: int
    budget_id: int
    gl_account_id: int
    cost_center_id: int
    fiscal_period_id: int
    original_amount: Decimal
    adjusted_amount: Decimal = _ZERO
    is_allocated: bool = False
    allocation_source_line_id: int | None = None
    allocation_percentage: Decimal | None = None
    source_reference: str | None = None

    def __post_init__(self) -> None:
        _require_decimal("BudgetLineItem", "original_amount", self.original_amount)
        _require_decimal("BudgetLineItem", "adjusted_amount", self.adjusted_amount)
        _require_decimal(
            "BudgetLineItem", "allocation_percentage", self.allocation_percentage,
        )

    @property
    def final_amount(self) -> Decimal:
        return self.original_amount + self.adjusted_amount


# =============================================================================
# Allocation rules
# =============================================================================


@dataclass(frozen=True)
class AllocationTarget:
    """Destination of an allocation rule.

    ``allocation_percentage`` is a fraction (0.25 == 25%).  When set it is
    applied directly and no driver data is consulted.  ``conditions`` are
    carried but not interpreted.
    """

    cost_center_id: int | None = None
    cost_center_code: str | None = None
    allocation_percentage: Decimal | None = None
    priority: int = 0
    conditions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.cost_center_id is None and not self.cost_center_code:
            raise ValueError("AllocationTarget requires cost_center_id or cost_center_code")
        _require_decimal(
            "AllocationTarget", "allocation_percentage", self.allocation_percentage,
        )

    @property
    def reference(self) -> str:
        if self.cost_center_id is not None:
            return str(self.cost_center_id)
        return str(self.cost_center_code)


@dataclass(frozen=True)
class AllocationRule:
    """
    Rule redistributing source line items onto target cost centers.

    Contract:
        A rule selects source line items by explicit cost center and/or
        SQL-LIKE patterns on cost-center code and account number.  Each
        selected item is spread over ``targets`` using either a fixed
        percentage or an allocation factor computed from ``basis``.
    Guarantees:
        - ``rounding_precision`` is non-negative.
    Non-goals:
        - ``rule_type`` does not change processing.
        - ``minimum_amount`` is carried but not enforced.
    """

    rule_id: int
    code: str
    basis: AllocationBasis
    targets: tuple[AllocationTarget, ...] = ()
    name: str = ""
    rule_type: RuleType = RuleType.DIRECT
    source_cost_center_id: int | None = None
    source_cost_center_pattern: str | None = None
    source_account_pattern: str | None = None
    allocation_percentage: Decimal | None = None
    rounding_method: RoundingMethod = RoundingMethod.NEAREST
    rounding_precision: int = 2
    execution_sequence: int = 100
    depends_on_rule_id: int | None = None
    is_active: bool = True
    effective_from: date = date.min
    effective_to: date | None = None
    minimum_amount: Decimal | None = None

    def __post_init__(self) -> None:
        if self.rounding_precision < 0:
            raise ValueError(f"Rule {self.code} rounding_precision must be >= 0")
        _require_decimal("AllocationRule", "allocation_percentage", self.allocation_percentage)
        _require_decimal("AllocationRule", "minimum_amount", self.minimum_amount)

    def is_effective(self, as_of: date) -> bool:
        if self.effective_from > as_of:
            return False
        return self.effective_to is None or as_of < self.effective_to


# =============================================================================
# Derived per-run artifacts
# =============================================================================


@dataclass(frozen=True)
class HierarchyNode:
    """One cost center placed in a resolved hierarchy.

    ``path`` holds the ids from root to this node.  ``sort_key`` joins the
    zero-padded ids with ``/`` so lexicographic order equals depth-first
    order.
    """

    cost_center_id: int
    code: str
    name: str
    parent_id: int | None
    level: int
    path: tuple[int, ...]
    path_names: str
    sort_key: str
    cumulative_weight: Decimal
    is_leaf: bool = True
    child_count: int = 0


class ConsolidatedKey(NamedTuple):
    gl_account_id: int
    cost_center_id: int
    fiscal_period_id: int


@dataclass(frozen=True)
class ConsolidatedAmount:
    gl_account_id: int
    cost_center_id: int
    fiscal_period_id: int
    consolidated_amount: Decimal
    elimination_amount: Decimal = _ZERO
    final_amount: Decimal | None = None
    source_count: int = 0

    @property
    def key(self) -> ConsolidatedKey:
        return ConsolidatedKey(
            self.gl_account_id, self.cost_center_id, self.fiscal_period_id,
        )


@dataclass(frozen=True)
class AllocationResult:
    """One allocated amount landing on one target cost center."""

    source_line_item_id: int
    target_cost_center_id: int
    target_gl_account_id: int
    fiscal_period_id: int
    allocated_amount: Decimal
    applied_percentage: Decimal
    rule_id: int
    iteration: int


@dataclass(frozen=True)
class ProcessedRuleRecord:
    """Per-rule totals accumulated across all passes of one run."""

    rule_id: int
    total_allocated: Decimal = _ZERO
    target_count: int = 0
    first_iteration: int | None = None
    last_iteration: int | None = None


@dataclass(frozen=True)
class AllocationWarning:
    """Non-fatal condition recorded during a run.

    Built from the typed exception that describes the condition so the
    warning code always matches the exception's ``code``.
    """

    code: str
    message: str
    rule_id: int | None = None
    line_item_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(
        cls,
        error: Exception,
        *,
        rule_id: int | None = None,
        line_item_id: int | None = None,
    ) -> AllocationWarning:
        details = {
            k: v for k, v in vars(error).items()
            if not k.startswith("_") and k not in ("rule_id", "line_item_id")
        }
        return cls(
            code=getattr(error, "code", type(error).__name__),
            message=str(error),
            rule_id=rule_id if rule_id is not None else getattr(error, "rule_id", None),
            line_item_id=(
                line_item_id if line_item_id is not None
                else getattr(error, "line_item_id", None)
            ),
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "rule_id": self.rule_id,
            "line_item_id": self.line_item_id,
        }
