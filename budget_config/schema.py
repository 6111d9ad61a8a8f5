"""
EngineSettings schema.

Typed, frozen view of the engine's tunables.  YAML files are parsed into
these types by the loader; services receive an ``EngineSettings`` and never
read configuration files themselves.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HierarchySettings:
    max_depth: int = 10

    def __post_init__(self) -> None:
        if self.max_depth < 0:
            raise ValueError(f"hierarchy.max_depth must be >= 0, got {self.max_depth}")


@dataclass(frozen=True)
class AllocationSettings:
    """Wavefront scheduler limits.  ``batch_size`` None means unbounded passes."""

    max_iterations: int = 100
    max_dependency_depth: int = 10
    batch_size: int | None = 1000
    throttle_delay_ms: int = 0
    factor_precision: int = 10

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ValueError("allocation.max_iterations must be >= 0")
        if self.max_dependency_depth < 1:
            raise ValueError("allocation.max_dependency_depth must be >= 1")
        if self.batch_size is not None and self.batch_size <= 0:
            raise ValueError("allocation.batch_size must be positive or null")
        if self.throttle_delay_ms < 0:
            raise ValueError("allocation.throttle_delay_ms must be >= 0")
        if self.factor_precision < 0:
            raise ValueError("allocation.factor_precision must be >= 0")

    @property
    def throttle_delay_seconds(self) -> float:
        return self.throttle_delay_ms / 1000.0


@dataclass(frozen=True)
class ConsolidationSettings:
    include_eliminations: bool = True
    include_zero_balances: bool = True
    rounding_precision: int | None = None

    def __post_init__(self) -> None:
        if self.rounding_precision is not None and self.rounding_precision < 0:
            raise ValueError("consolidation.rounding_precision must be >= 0 or null")


@dataclass(frozen=True)
class RunLockSettings:
    resource_prefix: str = "cost_allocation"
    exclusive_timeout_seconds: float = 30.0
    shared_timeout_seconds: float = 10.0
    lease_ttl_seconds: float = 3600.0
    poll_interval_seconds: float = 0.1

    def __post_init__(self) -> None:
        if not self.resource_prefix:
            raise ValueError("run_lock.resource_prefix must be non-empty")
        for name in (
            "exclusive_timeout_seconds",
            "shared_timeout_seconds",
            "lease_ttl_seconds",
            "poll_interval_seconds",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"run_lock.{name} must be >= 0")

    def resource_name(self, budget_id: int) -> str:
        return f"{self.resource_prefix}:{budget_id}"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Complete engine configuration.  ``checksum`` identifies the source."""

    hierarchy: HierarchySettings = field(default_factory=HierarchySettings)
    allocation: AllocationSettings = field(default_factory=AllocationSettings)
    consolidation: ConsolidationSettings = field(default_factory=ConsolidationSettings)
    run_lock: RunLockSettings = field(default_factory=RunLockSettings)
    checksum: str = ""
