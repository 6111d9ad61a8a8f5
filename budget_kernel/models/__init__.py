"""ORM models persisted by the budget kernel."""

from budget_kernel.models.run_lock import RunLockLeaseModel, RunLockResourceModel

__all__ = ["RunLockLeaseModel", "RunLockResourceModel"]
