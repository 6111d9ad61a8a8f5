"""
budget_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines
    (budget_engines/) with planning data access, the run lock and the
    injected clock.  This is the only layer that may hold database
    sessions, take locks, or read the clock.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction:
        budget_services/ -> budget_engines/  (allowed)
        budget_services/ -> budget_kernel/   (allowed)
        budget_services/ -> budget_config/   (allowed)
        budget_engines/  -> budget_services/ (FORBIDDEN)
        budget_kernel/   -> budget_services/ (FORBIDDEN)
"""

from budget_kernel.logging_config import get_logger

logger = get_logger("services")

from budget_services._run_types import (  # noqa: E402
    AllocationRunResult,
    ConcurrencyMode,
    RunStatus,
    RunSummary,
    StepLog,
    StepStatus,
)
from budget_services.allocation_run_orchestrator import AllocationRunOrchestrator  # noqa: E402
from budget_services.planning_repository import (  # noqa: E402
    InMemoryPlanningRepository,
    PlanningRepository,
    PlanningWriter,
)
from budget_services.run_lock import (  # noqa: E402
    InProcessRunLock,
    Lease,
    RunLock,
    SqlRunLock,
)

__all__ = [
    "AllocationRunOrchestrator",
    "AllocationRunResult",
    "ConcurrencyMode",
    "InMemoryPlanningRepository",
    "InProcessRunLock",
    "Lease",
    "PlanningRepository",
    "PlanningWriter",
    "RunLock",
    "RunStatus",
    "RunSummary",
    "SqlRunLock",
    "StepLog",
    "StepStatus",
]
