"""
Structured JSON logging for the workflow kernel.

Every record under the ``workflow_kernel`` logger tree is rendered as one
JSON object per line.  Request-scoped fields (correlation id, the approval
instance or request being worked on, the acting user, the event type and
trigger being dispatched) live in context variables, so they follow the
work across threads started with ``contextvars.copy_context`` and are
attached to every record without being passed around.

Values passed through ``extra=`` are made JSON-safe by ``_json_value``:
UUIDs and enums become their string/value form, datetimes ISO-8601, sets
sorted lists, and anything else its ``str()``.
"""

__all__ = [
    "CONTEXT_FIELDS",
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
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, TextIO
from uuid import UUID

LOGGER_NAMESPACE = "workflow_kernel"

CONTEXT_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "instance_id",
    "request_id",
    "actor",
    "event_type",
    "trigger_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"workflow_log_{name}", default=None) for name in CONTEXT_FIELDS
}


def _context_var(name: str) -> ContextVar[str | None]:
    try:
        return _context_vars[name]
    except KeyError:
        raise KeyError(f"Unknown log context field: {name}") from None


class LogContext:
    """Request-scoped fields copied onto every log record."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Set fields for the rest of the current context; None leaves a field as is."""
        for name, value in fields.items():
            var = _context_var(name)
            if value is not None:
                var.set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        return {
            name: value
            for name, var in _context_vars.items()
            if (value := var.get()) is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Set fields inside the ``with`` block and restore them on exit."""
        tokens: list[tuple[ContextVar[str | None], Token]] = []
        try:
            for name, value in fields.items():
                var = _context_var(name)
                if value is not None:
                    tokens.append((var, var.set(str(value))))
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else on a record came from extra=.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _json_value(obj: Any) -> Any:
    """``default=`` hook for json.dumps."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record))
        return json.dumps(payload, default=_json_value)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # kernel errors keep their identifying values as public attributes
        for name, value in vars(exc).items():
            if not name.startswith("_") and name != "code":
                fields[f"exc_{name}"] = value
        fields["traceback"] = self.formatException(record.exc_info)
        return fields


def get_logger(name: str) -> logging.Logger:
    """Logger ``workflow_kernel.<name>``."""
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_setup_lock = threading.Lock()
_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the ``workflow_kernel`` tree.

    Later calls are no-ops until ``reset_logging()``.
    """
    global _handler
    with _setup_lock:
        if _handler is not None:
            return
        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        _handler = handler
        _handler.setFormatter(StructuredFormatter())

        tree = logging.getLogger(LOGGER_NAMESPACE)
        tree.setLevel(level)
        tree.propagate = False
        tree.addHandler(_handler)


def reset_logging() -> None:
    """Detach every handler from the tree and allow reconfiguration (tests)."""
    global _handler
    with _setup_lock:
        _handler = None
        tree = logging.getLogger(LOGGER_NAMESPACE)
        tree.handlers.clear()
        tree.setLevel(logging.WARNING)
