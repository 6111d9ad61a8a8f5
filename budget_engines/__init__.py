"""
Module: budget_engines
Responsibility:
    Package entrypoint that re-exports the public symbols of the pure
    calculation engines: hierarchy resolution, consolidation, allocation
    factors, rule scheduling and budget variance.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import budget_kernel (and sibling engine modules).
    MUST NOT import budget_services or budget_config.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
      As-of dates are explicit parameters supplied by services.
    - Decimal-only arithmetic for amounts, weights and factors.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine entrypoints are wrapped by ``@traced_engine`` (see
    ``budget_engines.tracer``) and emit BUDGET_ENGINE_TRACE records.

Usage:
    from budget_engines import HierarchyResolver, ConsolidationAggregator
    from budget_engines import AllocationFactorCalculator, AllocationRuleScheduler
"""

from budget_kernel.logging_config import get_logger

logger = get_logger("engines")

from budget_engines.allocation_factor import AllocationFactorCalculator
from budget_engines.allocation_scheduler import (
    AllocationOutcome,
    AllocationRuleScheduler,
    DependencyGraph,
    build_dependency_graph,
    like_match,
)
from budget_engines.consolidation import (
    ConsolidationAggregator,
    ConsolidationResult,
    UnreconciledAmount,
)
from budget_engines.hierarchy import HierarchyResolver
from budget_engines.rounding import apply_rounding
from budget_engines.tracer import traced_engine
from budget_engines.variance import (
    BudgetVarianceCalculator,
    BudgetVarianceLine,
    VarianceStatus,
)

__all__ = [
    "AllocationFactorCalculator",
    "AllocationOutcome",
    "AllocationRuleScheduler",
    "BudgetVarianceCalculator",
    "BudgetVarianceLine",
    "ConsolidationAggregator",
    "ConsolidationResult",
    "DependencyGraph",
    "HierarchyResolver",
    "UnreconciledAmount",
    "VarianceStatus",
    "apply_rounding",
    "build_dependency_graph",
    "like_match",
    "traced_engine",
]

logger.debug("engines_package_loaded", extra={
    "modules": [
        "hierarchy", "consolidation", "allocation_factor",
        "allocation_scheduler", "rounding", "variance",
    ],
})
