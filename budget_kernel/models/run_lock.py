"""
ORM models backing the database run lock.

Contract:
    ``RunLockResourceModel`` is one guard row per lockable resource name.
    Lease acquisition locks that row (FOR UPDATE) so the compatibility
    check and the lease insert are serialized per resource.
    ``RunLockLeaseModel`` is one row per held lease; expired rows are
    reaped by the next acquirer.

Architecture: budget_kernel/models. Imports from budget_kernel.db.base only.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import Base


class RunLockResourceModel(Base):
    """Guard row serializing lease decisions for one resource name."""

    __tablename__ = "run_lock_resources"

    resource_name: Mapped[str] = mapped_column(
        String(200), nullable=False, unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )


class RunLockLeaseModel(Base):
    """Held lease on a resource (exclusive or shared)."""

    __tablename__ = "run_lock_leases"

    __table_args__ = (
        Index("ix_run_lock_leases_resource", "resource_name"),
    )

    resource_name: Mapped[str] = mapped_column(String(200), nullable=False)
    exclusive: Mapped[bool] = mapped_column(Boolean, nullable=False)
    holder: Mapped[str | None] = mapped_column(String(200), nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
