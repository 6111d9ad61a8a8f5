"""
Module: budget_kernel.logging_config
Responsibility:
    One JSON object per log record for the engines and services.  The
    identifiers of the active run are held in a context variable and
    merged into every record, so a record emitted anywhere below
    ``AllocationRunOrchestrator.run`` is attributable to its run and budget.
Architecture position: Kernel.  No imports from engines or services.

Record shape:
    ts, level, logger, message      always present
    correlation_id .. trace_id      the bound run context, when set
    <extra keys>                    event fields passed with ``extra=``
    error, traceback                when the record carries exc_info

    Decimal amounts and UUIDs are written as strings, enums as their
    value, sets as sorted lists, and run DTOs (``AllocationWarning``,
    ``RunSummary``) through their ``to_dict``.

Failure modes:
    - TypeError from ``LogContext.set`` / ``LogContext.bind`` for a field
      outside ``LogContext.FIELDS``.
"""

from __future__ import annotations

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, TextIO
from uuid import UUID

_LOGGER_PREFIX = "budget_kernel"

# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------

_EMPTY: Mapping[str, str] = MappingProxyType({})
_run_context: ContextVar[Mapping[str, str]] = ContextVar("budget_log_context", default=_EMPTY)


def _merged(current: Mapping[str, str], fields: Mapping[str, Any]) -> Mapping[str, str]:
    unknown = sorted(set(fields) - set(LogContext.FIELDS))
    if unknown:
        raise TypeError(f"Unknown log context field(s): {', '.join(unknown)}")
    merged = dict(current)
    merged.update((k, str(v)) for k, v in fields.items() if v is not None)
    return MappingProxyType(merged)


class LogContext:
    """
    Identifiers of the active run, merged into every record.

    Values are stored as strings.  The context is a ``ContextVar``, so
    each thread and each asyncio task sees only what it bound itself.
    """

    FIELDS: tuple[str, ...] = (
        "correlation_id",
        "run_id",
        "budget_id",
        "actor_id",
        "trace_id",
    )

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Overwrite the named fields for the rest of this context; None is skipped."""
        _run_context.set(_merged(_run_context.get(), fields))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_run_context.get())

    @classmethod
    def clear(cls) -> None:
        _run_context.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type[LogContext]]:
        """Bind fields for the ``with`` block; the previous context is restored on exit."""
        token = _run_context.set(_merged(_run_context.get(), fields))
        try:
            yield cls
        finally:
            _run_context.reset(token)


# ---------------------------------------------------------------------------
# JSON formatting
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _jsonable(value: Any) -> Any:
    """``json.dumps`` fallback for the value types the engines log."""
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return str(value)


def _error_fields(exc: BaseException) -> dict[str, Any]:
    # BudgetEngineError subclasses expose a code and their constructor arguments
    error: dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    code = getattr(exc, "code", None)
    if code is not None:
        error["code"] = code
    details = {
        k: v for k, v in vars(exc).items()
        if not k.startswith("_") and k != "code"
    }
    if details:
        error["details"] = details
    return error


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(
                timespec="milliseconds",
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_run_context.get())

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            payload["error"] = _error_fields(record.exc_info[1])
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_jsonable)


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``budget_kernel`` namespace (``services.run_lock`` etc.)."""
    if name == _LOGGER_PREFIX or name.startswith(f"{_LOGGER_PREFIX}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_lock = threading.Lock()
_installed: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Install the JSON handler on the ``budget_kernel`` logger.

    Idempotent: once a handler is installed, later calls change nothing
    until ``reset_logging``.  ``level`` takes a number or a level name
    (``"DEBUG"``).  Records do not propagate to the root logger.
    """
    global _installed
    with _lock:
        if _installed is not None:
            return
        installed = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        installed.setFormatter(StructuredFormatter())

        root_logger = logging.getLogger(_LOGGER_PREFIX)
        root_logger.setLevel(level.upper() if isinstance(level, str) else level)
        root_logger.propagate = False
        root_logger.addHandler(installed)
        _installed = installed


def reset_logging() -> None:
    """Remove the installed handler and restore WARNING. FOR TESTING ONLY."""
    global _installed
    with _lock:
        root_logger = logging.getLogger(_LOGGER_PREFIX)
        if _installed is not None:
            root_logger.removeHandler(_installed)
            _installed = None
        root_logger.setLevel(logging.WARNING)
