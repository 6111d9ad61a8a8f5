"""
Pure domain layer.

This module contains immutable planning-domain types with NO dependencies on:
- ORM (SQLAlchemy)
- Database
- Time/clock reads (the Clock interface lives here, but only services call it)
- I/O
"""

from budget_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from budget_kernel.domain.types import (
    AccountType,
    AllocationBasis,
    AllocationResult,
    AllocationRule,
    AllocationTarget,
    AllocationWarning,
    BudgetHeader,
    BudgetLineItem,
    BudgetStatus,
    ConsolidatedAmount,
    ConsolidatedKey,
    CostCenter,
    FiscalPeriod,
    GLAccount,
    HierarchyNode,
    ProcessedRuleRecord,
    RoundingMethod,
    RuleType,
    WorkItemStatus,
)

__all__ = [
    "AccountType",
    "AllocationBasis",
    "AllocationResult",
    "AllocationRule",
    "AllocationTarget",
    "AllocationWarning",
    "BudgetHeader",
    "BudgetLineItem",
    "BudgetStatus",
    "Clock",
    "ConsolidatedAmount",
    "ConsolidatedKey",
    "CostCenter",
    "DeterministicClock",
    "FiscalPeriod",
    "GLAccount",
    "HierarchyNode",
    "ProcessedRuleRecord",
    "RoundingMethod",
    "RuleType",
    "SystemClock",
    "WorkItemStatus",
]
