"""
RunLock -- Advisory exclusivity for consolidation/allocation runs.

Responsibility:
    Serialize runs against the same budget.  A run takes a lease on a
    named resource (``"cost_allocation:{budget_id}"``) for its whole
    duration.  Exclusive leases admit one holder; shared leases admit many
    holders and are excluded only by an exclusive one.

Architecture position:
    Services -- stateful orchestration.  ``InProcessRunLock`` coordinates
    threads of one process; ``SqlRunLock`` coordinates processes that
    share a database through the ``run_lock_leases`` table.

Invariants enforced:
    - At most one exclusive holder per resource, and never alongside a
      shared holder.
    - ``hold()`` releases on every exit path, including exceptions.
    - SQL leases expire after ``lease_ttl`` measured on the injected clock,
      so a crashed holder cannot block a resource forever.  A live holder
      keeps its lease by calling ``renew`` before the TTL runs out.

Failure modes:
    - LockTimeoutError when the lease is not granted within ``timeout``.
    - LeaseNotHeldError when releasing or renewing an unknown, released or
      expired lease.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from budget_config.schema import RunLockSettings
from budget_kernel.db.engine import get_session_factory
from budget_kernel.domain.clock import Clock, SystemClock
from budget_kernel.exceptions import LeaseNotHeldError, LockTimeoutError
from budget_kernel.logging_config import get_logger
from budget_kernel.models.run_lock import RunLockLeaseModel, RunLockResourceModel

logger = get_logger("services.run_lock")

DEFAULT_EXCLUSIVE_TIMEOUT = 30.0
DEFAULT_SHARED_TIMEOUT = 10.0


@dataclass(frozen=True)
class Lease:
    """Proof of a granted lock; pass it back to ``release``."""

    lease_id: UUID
    resource_name: str
    exclusive: bool
    acquired_at: datetime
    holder: str | None = None


class RunLock(ABC):
    """
    Named-resource reader/writer lock.

    Contract:
        ``acquire`` blocks up to ``timeout`` seconds.  ``timeout=0`` tries
        once without waiting.
    """

    @abstractmethod
    def acquire(
        self,
        resource_name: str,
        exclusive: bool = True,
        timeout: float = DEFAULT_EXCLUSIVE_TIMEOUT,
    ) -> Lease:
        """Acquire a lease or raise LockTimeoutError."""
        ...

    @abstractmethod
    def release(self, lease: Lease) -> None:
        """Release a lease or raise LeaseNotHeldError."""
        ...

    @abstractmethod
    def renew(self, lease: Lease) -> None:
        """Extend a held lease or raise LeaseNotHeldError if it was lost."""
        ...

    @contextmanager
    def hold(
        self,
        resource_name: str,
        exclusive: bool = True,
        timeout: float = DEFAULT_EXCLUSIVE_TIMEOUT,
    ) -> Generator[Lease, None, None]:
        """Scoped acquisition; the lease is released on every exit path.

        A lease that is already gone on exit (reaped after expiry) is
        logged, not raised, so it never masks the body's own outcome.
        """
        lease = self.acquire(resource_name, exclusive=exclusive, timeout=timeout)
        try:
            yield lease
        finally:
            try:
                self.release(lease)
            except LeaseNotHeldError:
                logger.warning("run_lock_lease_lost", extra={
                    "resource_name": lease.resource_name,
                    "lease_id": str(lease.lease_id),
                })


# =============================================================================
# In-process implementation
# =============================================================================


@dataclass
class _ResourceState:
    readers: int = 0
    writer: bool = False


class InProcessRunLock(RunLock):
    """
    Reader/writer lock shared by the threads of one process.

    Non-goals:
        - No fairness guarantee between waiting readers and writers.
    """

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._condition = threading.Condition()
        self._resources: dict[str, _ResourceState] = {}
        self._held: dict[UUID, Lease] = {}

    def acquire(
        self,
        resource_name: str,
        exclusive: bool = True,
        timeout: float = DEFAULT_EXCLUSIVE_TIMEOUT,
    ) -> Lease:
        deadline = time.monotonic() + max(timeout, 0.0)
        with self._condition:
            state = self._resources.setdefault(resource_name, _ResourceState())
            while not self._grantable(state, exclusive):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("run_lock_timeout", extra={
                        "resource_name": resource_name,
                        "exclusive": exclusive,
                        "timeout": timeout,
                    })
                    raise LockTimeoutError(resource_name, exclusive, timeout)
                self._condition.wait(remaining)

            if exclusive:
                state.writer = True
            else:
                state.readers += 1
            lease = Lease(
                lease_id=uuid4(),
                resource_name=resource_name,
                exclusive=exclusive,
                acquired_at=self._clock.now(),
            )
            self._held[lease.lease_id] = lease

        logger.debug("run_lock_acquired", extra={
            "resource_name": resource_name,
            "exclusive": exclusive,
            "lease_id": str(lease.lease_id),
        })
        return lease

    def release(self, lease: Lease) -> None:
        with self._condition:
            if self._held.pop(lease.lease_id, None) is None:
                raise LeaseNotHeldError(lease.resource_name, lease.lease_id)
            state = self._resources[lease.resource_name]
            if lease.exclusive:
                state.writer = False
            else:
                state.readers -= 1
            if not state.writer and state.readers == 0:
                del self._resources[lease.resource_name]
            self._condition.notify_all()

        logger.debug("run_lock_released", extra={
            "resource_name": lease.resource_name,
            "lease_id": str(lease.lease_id),
        })

    def renew(self, lease: Lease) -> None:
        # In-process leases never expire
        with self._condition:
            if lease.lease_id not in self._held:
                raise LeaseNotHeldError(lease.resource_name, lease.lease_id)

    @staticmethod
    def _grantable(state: _ResourceState, exclusive: bool) -> bool:
        if exclusive:
            return not state.writer and state.readers == 0
        return not state.writer


# =============================================================================
# Database implementation
# =============================================================================


class SqlRunLock(RunLock):
    """
    Lease table lock for runs in separate processes sharing one database.

    Contract:
        Each attempt runs in its own short transaction: lock the resource
        guard row (FOR UPDATE), reap expired leases, check compatibility,
        insert the new lease, commit.  Waiting happens between attempts.
    Guarantees:
        - A lease not renewed within ``lease_ttl`` seconds on the injected
          clock is treated as abandoned and removed by the next acquirer.
        - ``renew`` on a removed lease raises, so a holder learns it lost
          exclusivity before acting on it.
    """

    @classmethod
    def from_settings(
        cls,
        settings: RunLockSettings,
        session_factory: sessionmaker[Session] | None = None,
        clock: Clock | None = None,
        holder: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> SqlRunLock:
        """Build from the ``run_lock`` settings section.

        Without ``session_factory`` the kernel's initialized factory
        (``init_engine_from_url``) is used.
        """
        return cls(
            session_factory if session_factory is not None else get_session_factory(),
            clock=clock,
            lease_ttl=settings.lease_ttl_seconds,
            poll_interval=settings.poll_interval_seconds,
            holder=holder,
            sleep=sleep,
        )

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        lease_ttl: float = 3600.0,
        poll_interval: float = 0.1,
        holder: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._lease_ttl = timedelta(seconds=lease_ttl)
        self._poll_interval = poll_interval
        self._holder = holder
        self._sleep = sleep

    def acquire(
        self,
        resource_name: str,
        exclusive: bool = True,
        timeout: float = DEFAULT_EXCLUSIVE_TIMEOUT,
    ) -> Lease:
        deadline = time.monotonic() + max(timeout, 0.0)
        attempts = 0
        while True:
            attempts += 1
            lease = self._try_acquire(resource_name, exclusive)
            if lease is not None:
                logger.info("run_lock_acquired", extra={
                    "resource_name": resource_name,
                    "exclusive": exclusive,
                    "lease_id": str(lease.lease_id),
                    "attempts": attempts,
                })
                return lease
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("run_lock_timeout", extra={
                    "resource_name": resource_name,
                    "exclusive": exclusive,
                    "timeout": timeout,
                    "attempts": attempts,
                })
                raise LockTimeoutError(resource_name, exclusive, timeout)
            self._sleep(min(self._poll_interval, remaining))

    def release(self, lease: Lease) -> None:
        with self._session_factory() as session, session.begin():
            result = session.execute(
                delete(RunLockLeaseModel).where(RunLockLeaseModel.id == lease.lease_id)
            )
            if result.rowcount == 0:
                raise LeaseNotHeldError(lease.resource_name, lease.lease_id)

        logger.info("run_lock_released", extra={
            "resource_name": lease.resource_name,
            "lease_id": str(lease.lease_id),
        })

    def renew(self, lease: Lease) -> None:
        expires_at = self._now() + self._lease_ttl
        with self._session_factory() as session, session.begin():
            result = session.execute(
                update(RunLockLeaseModel)
                .where(RunLockLeaseModel.id == lease.lease_id)
                .values(expires_at=expires_at)
            )
            if result.rowcount == 0:
                logger.error("run_lock_renew_failed", extra={
                    "resource_name": lease.resource_name,
                    "lease_id": str(lease.lease_id),
                })
                raise LeaseNotHeldError(lease.resource_name, lease.lease_id)

        logger.debug("run_lock_renewed", extra={
            "resource_name": lease.resource_name,
            "lease_id": str(lease.lease_id),
            "expires_at": expires_at,
        })

    def _now(self) -> datetime:
        return self._clock.now().astimezone(timezone.utc)

    def _ensure_resource(self, resource_name: str) -> None:
        with self._session_factory() as session:
            exists = session.execute(
                select(RunLockResourceModel.id)
                .where(RunLockResourceModel.resource_name == resource_name)
            ).first()
            if exists is not None:
                return
            session.add(RunLockResourceModel(
                resource_name=resource_name, created_at=self._now(),
            ))
            try:
                session.commit()
            except IntegrityError:
                # Created concurrently by another acquirer
                session.rollback()

    def _try_acquire(self, resource_name: str, exclusive: bool) -> Lease | None:
        self._ensure_resource(resource_name)
        now = self._now()
        with self._session_factory() as session, session.begin():
            session.execute(
                select(RunLockResourceModel)
                .where(RunLockResourceModel.resource_name == resource_name)
                .with_for_update()
            ).scalar_one()

            reaped = session.execute(
                delete(RunLockLeaseModel)
                .where(RunLockLeaseModel.resource_name == resource_name)
                .where(RunLockLeaseModel.expires_at <= now)
            ).rowcount
            if reaped:
                logger.warning("run_lock_leases_expired", extra={
                    "resource_name": resource_name,
                    "reaped_count": reaped,
                })

            held = session.execute(
                select(RunLockLeaseModel.exclusive)
                .where(RunLockLeaseModel.resource_name == resource_name)
            ).scalars().all()
            if exclusive and held:
                return None
            if not exclusive and any(held):
                return None

            lease_id = uuid4()
            session.add(RunLockLeaseModel(
                id=lease_id,
                resource_name=resource_name,
                exclusive=exclusive,
                holder=self._holder,
                acquired_at=now,
                expires_at=now + self._lease_ttl,
            ))

        return Lease(
            lease_id=lease_id,
            resource_name=resource_name,
            exclusive=exclusive,
            acquired_at=now,
            holder=self._holder,
        )
