"""
Structured JSON logging for the reseller kernel.

Every record under the ``reseller_kernel`` logger is written as one JSON
object per line.  The gateway binds the operation name, the caller id and
the target account id into LogContext for the length of an operation, so
records emitted by selectors and services underneath carry them without
threading them through every call.

Credential-bearing fields (webhook secrets, Authorization and apikey
headers) are masked before a record is serialised.
"""

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

__all__ = [
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

ROOT_LOGGER = "reseller_kernel"
REDACTED = "***"

_SENSITIVE_KEYS = frozenset({"secret", "apikey", "authorization", "password", "token"})

# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}

_CONTEXT_FIELDS = ("correlation_id", "actor_id", "target_id", "operation")
_CONTEXT: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"reseller_log_{name}", default=None) for name in _CONTEXT_FIELDS
}


def _context_var(name: str) -> ContextVar[str | None]:
    try:
        return _CONTEXT[name]
    except KeyError:
        raise TypeError(f"unknown log context field: {name!r}") from None


class LogContext:
    """
    Operation-scoped log fields.

    Values live in ContextVars, so concurrent gateway calls on different
    threads never see each other's ids.  All values are stored as strings.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        """Set the given fields.  None leaves a field unchanged."""
        for name, value in fields.items():
            if value is not None:
                _context_var(name).set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        """The fields currently set, in a fixed order."""
        current: dict[str, str] = {}
        for name, var in _CONTEXT.items():
            value = var.get()
            if value is not None:
                current[name] = value
        return current

    @staticmethod
    def clear() -> None:
        for var in _CONTEXT.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Set fields for the duration of a ``with`` block, then restore them."""
        tokens = []
        for name, value in fields.items():
            if value is not None:
                var = _context_var(name)
                tokens.append((var, var.set(str(value))))
        try:
            yield
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


def _mask(key: str, value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _mask(str(k), v) for k, v in value.items()}
    if value and key.lower() in _SENSITIVE_KEYS:
        return REDACTED
    return value


def _to_json(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


class StructuredFormatter(logging.Formatter):
    """Envelope, then LogContext fields, then extras, then exception details."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(LogContext.get_all())

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and key not in entry:
                entry[key] = _mask(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            entry.update(self._exception_fields(record))

        return json.dumps(entry, default=_to_json)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # Kernel exceptions keep their constructor arguments as attributes.
        for key, value in vars(exc).items():
            if not key.startswith("_") and key != "code":
                fields[f"exc_{key}"] = _mask(key, value)
        fields["traceback"] = self.formatException(record.exc_info)
        return fields


def get_logger(name: str) -> logging.Logger:
    """Child of the ``reseller_kernel`` logger, e.g. ``services.gateway``."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


_state_lock = threading.Lock()
_configured = False


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``reseller_kernel`` logger.

    Only the first call has an effect until reset_logging() runs.  Kernel
    records do not propagate to the root logger, so a host application's
    own handlers keep their formatting.
    """
    global _configured
    with _state_lock:
        if _configured:
            return
        _configured = True

        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())

        kernel_logger = logging.getLogger(ROOT_LOGGER)
        kernel_logger.setLevel(level)
        kernel_logger.propagate = False
        kernel_logger.addHandler(handler)


def reset_logging() -> None:
    """Detach handlers and allow configure_logging() to run again."""
    global _configured
    with _state_lock:
        _configured = False
        kernel_logger = logging.getLogger(ROOT_LOGGER)
        kernel_logger.handlers.clear()
        kernel_logger.setLevel(logging.WARNING)
        kernel_logger.propagate = True
