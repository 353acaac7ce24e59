"""
Structured JSON logging for billing runs.

Every record under the ``billing_kernel`` logger is written as one JSON
object.  Fields passed through ``extra=`` become top-level keys, the
current ``LogContext`` (run, tenant, vendor invoice, invoice) is stamped
on, and a ``BillingError`` attached via ``exc_info`` contributes its code
and structured attributes as ``exc_*`` keys.
"""

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
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from typing import Any, Iterator

_CONTEXT_FIELDS = ("run_id", "tenant_id", "vendor_invoice_id", "invoice_id")

_context: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"billing_log_{name}", default=None) for name in _CONTEXT_FIELDS
}


class LogContext:
    """Run-scoped fields added to every record; one copy per thread."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Set known fields; None values and unknown names are ignored."""
        for name, value in fields.items():
            var = _context.get(name)
            if var is not None and value is not None:
                var.set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        return {name: var.get() for name, var in _context.items() if var.get() is not None}

    @staticmethod
    def clear() -> None:
        for var in _context.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[type["LogContext"]]:
        """Set fields for the duration of a block, then restore the outer values."""
        tokens = []
        for name, value in fields.items():
            var = _context.get(name)
            if var is not None and value is not None:
                tokens.append((var, var.set(str(value))))
        try:
            yield LogContext
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# Attributes every LogRecord carries; anything else came in through extra=.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON line per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and key not in payload:
                payload[key] = value

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            code = getattr(exc, "code", None)
            if code is not None:
                payload["exc_code"] = code
            for key, value in vars(exc).items():
                if not key.startswith("_") and key != "code":
                    payload[f"exc_{key}"] = value
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


_LOGGER_PREFIX = "billing_kernel"


def get_logger(name: str) -> logging.Logger:
    """Logger under the billing_kernel namespace, e.g. ``billing_kernel.batch``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the billing_kernel logger.  Later calls are no-ops."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    root.propagate = False
    handler = handler or logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)


def reset_logging() -> None:
    """Undo configure_logging.  Tests only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.WARNING)
