"""
budget_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain engine settings at runtime through
    ``get_active_settings()``.  Services receive the returned
    ``EngineSettings`` by injection and never read files or environment
    variables themselves.

Architecture position:
    Configuration -- YAML-driven settings.  Sits above ``budget_kernel``
    and below ``budget_services``.  Engines never import this package;
    services pass the relevant values as arguments.

Failure modes:
    - ``FileNotFoundError`` -- the selected settings file does not exist.
    - ``ValueError`` -- schema validation failures.

Audit relevance:
    Every ``get_active_settings()`` call emits a ``BUDGET_CONFIG_TRACE``
    log entry with the source path and checksum, tying each run to the
    exact settings that governed it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from budget_config.loader import load_engine_settings, settings_from_dict
from budget_config.schema import (
    AllocationSettings,
    ConsolidationSettings,
    EngineSettings,
    HierarchySettings,
    RunLockSettings,
)

_logger = logging.getLogger("budget_kernel.config")

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "defaults.yaml"
CONFIG_PATH_ENV_VAR = "BUDGET_ENGINE_CONFIG"


def get_active_settings(config_path: Path | str | None = None) -> EngineSettings:
    """The ONLY public configuration entrypoint.

    Resolution order: explicit ``config_path``, then the
    ``BUDGET_ENGINE_CONFIG`` environment variable, then the bundled
    ``defaults.yaml``.
    """
    if config_path is not None:
        path = Path(config_path)
    elif os.environ.get(CONFIG_PATH_ENV_VAR):
        path = Path(os.environ[CONFIG_PATH_ENV_VAR])
    else:
        path = DEFAULT_SETTINGS_PATH

    settings = load_engine_settings(path)

    _logger.info(
        "BUDGET_CONFIG_TRACE",
        extra={
            "trace_type": "BUDGET_CONFIG_TRACE",
            "config_path": str(path),
            "checksum": settings.checksum,
            "max_iterations": settings.allocation.max_iterations,
            "lock_resource_prefix": settings.run_lock.resource_prefix,
        },
    )
    return settings


__all__ = [
    "CONFIG_PATH_ENV_VAR",
    "DEFAULT_SETTINGS_PATH",
    "AllocationSettings",
    "ConsolidationSettings",
    "EngineSettings",
    "HierarchySettings",
    "RunLockSettings",
    "get_active_settings",
    "load_engine_settings",
    "settings_from_dict",
]
