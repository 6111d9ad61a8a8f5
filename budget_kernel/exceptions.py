"""
Typed Exception Hierarchy for the Budget Engine.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BudgetEngineError:

    BudgetEngineError (base)
    |
    +-- ValidationError
    |   +-- BudgetNotFoundError
    |   +-- BudgetStatusError
    |   +-- PeriodNotFoundError
    |   +-- PeriodOutOfRangeError
    |   +-- ClosedPeriodError
    |   +-- CostCenterNotFoundError
    |
    +-- ConcurrencyError
    |   +-- LockTimeoutError
    |   +-- LeaseNotHeldError
    |
    +-- AllocationError
    |   +-- CycleDetectedError
    |   +-- UnsupportedBasisError
    |   +-- IterationLimitExceededError
    |   +-- UnsatisfiableDependencyError
    |   +-- UnresolvedTargetError
    |   +-- AllocationCancelledError
    |
    +-- ConsolidationError
    |   +-- UnreconciledIntercompanyError
    |
    +-- RunPersistenceError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                      | Disposition
-------------|---------------------------|--------------------------------------
Validation   | BUDGET_NOT_FOUND          | Run aborted before any work
             | BUDGET_STATUS_INVALID     | Run aborted (budget not APPROVED/LOCKED)
             | PERIOD_NOT_FOUND          | Run aborted
             | PERIOD_OUT_OF_RANGE       | Run aborted
             | CLOSED_PERIOD             | Run aborted, or per-item warning
             | COST_CENTER_NOT_FOUND     | Hierarchy resolution aborted
-------------|---------------------------|--------------------------------------
Concurrency  | LOCK_TIMEOUT              | Run aborted, nothing computed
             | LEASE_NOT_HELD            | Release or renew of a lost lease
-------------|---------------------------|--------------------------------------
Allocation   | CYCLE_DETECTED            | Warning, rules run with no dependency
             | UNSUPPORTED_BASIS         | Warning, work item marked failed
             | ITERATION_LIMIT_EXCEEDED  | Warning, partial results kept
             | UNSATISFIABLE_DEPENDENCY  | Warning per stalled work item
             | UNRESOLVED_TARGET         | Warning, target skipped
             | ALLOCATION_CANCELLED      | Run aborted, no partial results
-------------|---------------------------|--------------------------------------
Consolidation| UNRECONCILED_INTERCOMPANY | Warning, amounts kept uneliminated
-------------|---------------------------|--------------------------------------
Persistence  | PERSIST_FAILED            | Run aborted, nothing saved

===============================================================================
HANDLING PATTERNS
===============================================================================

Allocation-level conditions that must not abort a run are raised inside
the scheduler, caught there, and converted into ``AllocationWarning``
records with ``AllocationWarning.from_error``.  Everything else
propagates to the caller of the run and nothing computed by the run is
exposed.

    try:
        result = orchestrator.run(budget_id=7)
    except LockTimeoutError as e:
        retry_later(e.resource_name)
    except ValidationError as e:
        api_response(code=e.code, message=str(e))
"""

from __future__ import annotations

from typing import Any


class BudgetEngineError(Exception):
    """
    Base exception for all budget engine errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BUDGET_ENGINE_ERROR"


# Validation exceptions


class ValidationError(BudgetEngineError):
    """Run inputs failed validation before any work started."""

    code: str = "VALIDATION_ERROR"


class BudgetNotFoundError(ValidationError):
    """Budget with given ID was not found."""

    code: str = "BUDGET_NOT_FOUND"

    def __init__(self, budget_id: Any):
        self.budget_id = budget_id
        super().__init__(f"Budget not found: {budget_id}")


class BudgetStatusError(ValidationError):
    """Budget is not in a status that permits consolidation/allocation."""

    code: str = "BUDGET_STATUS_INVALID"

    def __init__(self, budget_id: Any, status: str, allowed: tuple[str, ...]):
        self.budget_id = budget_id
        self.status = status
        self.allowed = allowed
        super().__init__(
            f"Budget {budget_id} has status {status}; "
            f"expected one of {', '.join(allowed)}"
        )


class PeriodNotFoundError(ValidationError):
    """Fiscal period with given ID was not found."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, fiscal_period_id: Any):
        self.fiscal_period_id = fiscal_period_id
        super().__init__(f"Fiscal period not found: {fiscal_period_id}")


class PeriodOutOfRangeError(ValidationError):
    """Fiscal period is outside the budget's period range."""

    code: str = "PERIOD_OUT_OF_RANGE"

    def __init__(self, fiscal_period_id: Any, budget_id: Any):
        self.fiscal_period_id = fiscal_period_id
        self.budget_id = budget_id
        super().__init__(
            f"Fiscal period {fiscal_period_id} is outside the range "
            f"of budget {budget_id}"
        )


class ClosedPeriodError(ValidationError):
    """Attempt to allocate into a closed fiscal period."""

    code: str = "CLOSED_PERIOD"

    def __init__(self, fiscal_period_id: Any, line_item_id: Any = None):
        self.fiscal_period_id = fiscal_period_id
        self.line_item_id = line_item_id
        if line_item_id is None:
            msg = f"Fiscal period {fiscal_period_id} is closed"
        else:
            msg = (
                f"Line item {line_item_id} belongs to closed fiscal "
                f"period {fiscal_period_id}"
            )
        super().__init__(msg)


class CostCenterNotFoundError(ValidationError):
    """Cost center with given ID was not found."""

    code: str = "COST_CENTER_NOT_FOUND"

    def __init__(self, cost_center_id: Any):
        self.cost_center_id = cost_center_id
        super().__init__(f"Cost center not found: {cost_center_id}")


# Concurrency exceptions


class ConcurrencyError(BudgetEngineError):
    """Base exception for run-lock errors."""

    code: str = "CONCURRENCY_ERROR"


class LockTimeoutError(ConcurrencyError):
    """Run lock could not be acquired within the timeout."""

    code: str = "LOCK_TIMEOUT"

    def __init__(self, resource_name: str, exclusive: bool, timeout: float):
        self.resource_name = resource_name
        self.exclusive = exclusive
        self.timeout = timeout
        mode = "exclusive" if exclusive else "shared"
        super().__init__(
            f"Timed out after {timeout}s acquiring {mode} lock on {resource_name}"
        )


class LeaseNotHeldError(ConcurrencyError):
    """Release attempted on a lease that is not currently held."""

    code: str = "LEASE_NOT_HELD"

    def __init__(self, resource_name: str, lease_id: Any):
        self.resource_name = resource_name
        self.lease_id = lease_id
        super().__init__(f"Lease {lease_id} is not held on {resource_name}")


# Allocation exceptions


class AllocationError(BudgetEngineError):
    """Base exception for allocation scheduling errors."""

    code: str = "ALLOCATION_ERROR"


class CycleDetectedError(AllocationError):
    """Rule dependency graph contains a cycle."""

    code: str = "CYCLE_DETECTED"

    def __init__(self, rule_ids: tuple[int, ...]):
        self.rule_ids = rule_ids
        chain = " -> ".join(str(r) for r in rule_ids)
        super().__init__(f"Circular rule dependency detected: {chain}")


class UnsupportedBasisError(AllocationError):
    """Allocation basis has no driver computation."""

    code: str = "UNSUPPORTED_BASIS"

    def __init__(self, basis: Any, rule_id: Any = None, line_item_id: Any = None):
        self.basis = str(getattr(basis, "value", basis))
        self.rule_id = rule_id
        self.line_item_id = line_item_id
        super().__init__(f"Unsupported allocation basis: {self.basis}")


class IterationLimitExceededError(AllocationError):
    """Wavefront loop hit its iteration cap with work still pending."""

    code: str = "ITERATION_LIMIT_EXCEEDED"

    def __init__(self, max_iterations: int, pending_count: int):
        self.max_iterations = max_iterations
        self.pending_count = pending_count
        super().__init__(
            f"Maximum iterations ({max_iterations}) reached with "
            f"{pending_count} work item(s) still pending"
        )


class UnsatisfiableDependencyError(AllocationError):
    """Work item can never run because its rule's dependency never completes."""

    code: str = "UNSATISFIABLE_DEPENDENCY"

    def __init__(self, rule_id: Any, depends_on_rule_id: Any, line_item_id: Any):
        self.rule_id = rule_id
        self.depends_on_rule_id = depends_on_rule_id
        self.line_item_id = line_item_id
        super().__init__(
            f"Rule {rule_id} waits on rule {depends_on_rule_id}, which never "
            f"completed; line item {line_item_id} was not allocated"
        )


class UnresolvedTargetError(AllocationError):
    """Allocation target does not name an active cost center."""

    code: str = "UNRESOLVED_TARGET"

    def __init__(self, rule_id: Any, target_ref: Any):
        self.rule_id = rule_id
        self.target_ref = target_ref
        super().__init__(
            f"Rule {rule_id} target {target_ref} is not an active cost center"
        )


class AllocationCancelledError(AllocationError):
    """Cancellation was requested between wavefront passes."""

    code: str = "ALLOCATION_CANCELLED"

    def __init__(self, iteration: int):
        self.iteration = iteration
        super().__init__(f"Allocation cancelled after pass {iteration}")


# Consolidation exceptions


class ConsolidationError(BudgetEngineError):
    """Base exception for consolidation errors."""

    code: str = "CONSOLIDATION_ERROR"


class UnreconciledIntercompanyError(ConsolidationError):
    """Intercompany balance and its partner balance do not offset."""

    code: str = "UNRECONCILED_INTERCOMPANY"

    def __init__(
        self,
        gl_account_id: Any,
        cost_center_id: Any,
        fiscal_period_id: Any,
        unmatched_amount: Any,
        partner_cost_center_id: Any,
    ):
        self.gl_account_id = gl_account_id
        self.cost_center_id = cost_center_id
        self.fiscal_period_id = fiscal_period_id
        self.unmatched_amount = unmatched_amount
        self.partner_cost_center_id = partner_cost_center_id
        super().__init__(
            f"Intercompany account {gl_account_id} at cost center {cost_center_id} "
            f"is out of balance with partner {partner_cost_center_id} by "
            f"{unmatched_amount} in period {fiscal_period_id}"
        )


# Persistence exceptions


class RunPersistenceError(BudgetEngineError):
    """Writer failed to save a run's output; nothing was saved."""

    code: str = "PERSIST_FAILED"

    def __init__(self, budget_id: Any, cause: Exception):
        self.budget_id = budget_id
        self.cause = cause
        super().__init__(
            f"Saving run output for budget {budget_id} failed: "
            f"{type(cause).__name__}: {cause}"
        )
