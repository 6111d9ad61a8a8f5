"""
Configuration Loader (``budget_config.loader``).

Responsibility
--------------
Loads YAML settings files and parses them into the frozen
``budget_config.schema`` dataclasses.  The public runtime entry point is
``budget_config.get_active_settings()``; this module is its tooling.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Unknown keys are rejected so typos never silently fall back to defaults.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the parsed
  mapping for configuration identity.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown section or key, wrong value type  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from budget_config.schema import (
    AllocationSettings,
    ConsolidationSettings,
    EngineSettings,
    HierarchySettings,
    RunLockSettings,
)

_SECTIONS = {
    "hierarchy": HierarchySettings,
    "allocation": AllocationSettings,
    "consolidation": ConsolidationSettings,
    "run_lock": RunLockSettings,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _parse_section(name: str, cls: type, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"engine.{name} must be a mapping")
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(
            f"Unknown keys in engine.{name}: {', '.join(sorted(unknown))}"
        )
    for key, value in data.items():
        if isinstance(value, bool) and key not in (
            "include_eliminations", "include_zero_balances",
        ):
            raise ValueError(f"engine.{name}.{key} must not be a boolean")
    return cls(**data)


def settings_from_dict(data: dict[str, Any]) -> EngineSettings:
    """
    Parse an ``EngineSettings`` from a mapping with an ``engine`` root key.

    Missing sections and keys take their schema defaults.

    Raises:
        ValueError: unknown section/key or a value rejected by the schema.
    """
    root = data.get("engine", {}) if data else {}
    if root is None:
        root = {}
    if not isinstance(root, dict):
        raise ValueError("engine must be a mapping")
    unknown = set(root) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown engine sections: {', '.join(sorted(unknown))}")

    sections = {
        name: _parse_section(name, cls, root.get(name))
        for name, cls in _SECTIONS.items()
    }
    return EngineSettings(**sections, checksum=compute_checksum(data or {}))


def load_engine_settings(path: Path) -> EngineSettings:
    """Load and parse one settings file."""
    return settings_from_dict(load_yaml_file(Path(path)))
