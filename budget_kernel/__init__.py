"""
Budget Kernel

Shared foundation for the budget consolidation and cost allocation engine:
- Immutable planning-domain types (cost centers, budgets, rules)
- Typed exception hierarchy with machine-readable codes
- Structured JSON logging
- Injectable clock
- SQLAlchemy declarative base for the persisted run lock
"""

__version__ = "0.1.0"
