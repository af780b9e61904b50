"""
Module: dispatch_kernel.logging_config
Responsibility: One JSON object per log line, with request-scoped fields
    (who is acting, on what, under which idempotency key) merged in from
    context variables.
Architecture position: Kernel.  Imported by every other kernel module and
    by dispatch_services; imports nothing from the kernel itself.

Services log snake_case event names and put everything else in ``extra``:

    logger.info("stock_reserved", extra={"order_id": order.id, "lines": 3})

Exceptions logged with ``exc_info`` are flattened: a DispatchKernelError
contributes ``exc_code`` and one ``exc_<attr>`` field per public attribute
(entity_type, entity_id, current_status, ...).
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
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterator

_LOGGER_PREFIX = "dispatch_kernel"

CONTEXT_FIELDS = (
    "correlation_id",
    "actor_id",
    "entity_id",
    "idempotency_key",
    "trace_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"dispatch_{name}", default=None) for name in CONTEXT_FIELDS
}


def _var(name: str) -> ContextVar[str | None]:
    try:
        return _context_vars[name]
    except KeyError:
        raise TypeError(f"unknown log context field {name!r}") from None


class LogContext:
    """
    Request-scoped log fields, safe across threads and tasks.

    The orchestrator binds ``actor_id``, ``entity_id``, ``correlation_id``
    and ``idempotency_key`` around each operation, so every line written
    by the services it calls can be joined back to the request.
    """

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Set the given fields; None values are left untouched."""
        for name, value in fields.items():
            if value is not None:
                _var(name).set(str(value))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        values = {name: var.get() for name, var in _context_vars.items()}
        return {name: value for name, value in values.items() if value is not None}

    @classmethod
    def clear(cls) -> None:
        for var in _context_vars.values():
            var.set(None)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type["LogContext"]]:
        """Set fields for the duration of a ``with`` block, then restore them."""
        tokens = [
            (_var(name), _var(name).set(str(value)))
            for name, value in fields.items()
            if value is not None
        ]
        try:
            yield cls
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if name.startswith("_") or name in ("args", "code"):
            continue
        fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """``{"ts", "level", "logger", "message", <context>, <extra>, <exc_*>}``"""

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        line.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in line
        )
        if record.exc_info and record.exc_info[1] is not None:
            line.update(_exception_fields(record.exc_info[1]))
            line["traceback"] = self.formatException(record.exc_info)
        return json.dumps(line, default=_jsonable)


def get_logger(name: str) -> logging.Logger:
    """``get_logger("services.inventory_ledger")`` -> ``dispatch_kernel.services.inventory_ledger``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach one JSON handler to the ``dispatch_kernel`` logger.

    Only the first call has any effect until reset_logging() is called.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.setLevel(level)
    kernel_logger.propagate = False
    target = handler or logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    kernel_logger.addHandler(target)


def reset_logging() -> None:
    """Undo configure_logging(). Tests only."""
    global _configured
    with _lock:
        _configured = False
    kernel_logger = logging.getLogger(_LOGGER_PREFIX)
    kernel_logger.handlers.clear()
    kernel_logger.setLevel(logging.WARNING)
    kernel_logger.propagate = True
