"""
Structured JSON logging for the harvest kernel.

Every record is one JSON line: ``ts``, ``level``, ``logger`` and
``message``, then the bound LogContext fields (which simulation, which
owner, which sync action), then whatever the call passed in ``extra=``.
Kernel exceptions contribute their ``code`` and structured attributes as
``exc_*`` keys.

LogContext lives in a single ContextVar so a binding is visible to the
current thread or task only.  Sync drains run on a worker pool, which does
not inherit context vars; ``LogContext.carry`` wraps a callable so it runs
under the submitting thread's context.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import functools
import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar, copy_context
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterator, Mapping, TypeVar
from uuid import UUID

T = TypeVar("T")

CONTEXT_FIELDS = ("correlation_id", "simulation_id", "owner_id", "action_id")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_context: ContextVar[Mapping[str, str]] = ContextVar("harvest_log_context", default=_EMPTY)


def _merged(fields: dict[str, str | None]) -> Mapping[str, str]:
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"unknown log context fields: {sorted(unknown)}")
    current = dict(_context.get())
    current.update({k: v for k, v in fields.items() if v is not None})
    return MappingProxyType(current)


class LogContext:
    """Per-thread (and per-task) log fields for the running operation."""

    @staticmethod
    def set(**fields: str | None) -> None:
        """Overwrite the given fields; None leaves a field unchanged."""
        _context.set(_merged(fields))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set(_EMPTY)

    @staticmethod
    @contextmanager
    def bind(**fields: str | None) -> Iterator[type["LogContext"]]:
        """Add fields for the duration of the block, then restore."""
        token = _context.set(_merged(fields))
        try:
            yield LogContext
        finally:
            _context.reset(token)

    @staticmethod
    def carry(fn: Callable[..., T]) -> Callable[..., T]:
        """Bind ``fn`` to a copy of the caller's context, for pool threads."""
        ctx = copy_context()

        @functools.wraps(fn)
        def run(*args: Any, **kwargs: Any) -> T:
            return ctx.copy().run(fn, *args, **kwargs)

        return run


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (Decimal, UUID)):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, Mapping):
        return dict(obj)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for name, value in vars(exc).items():
        if not name.startswith("_") and name != "code":
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STDLIB_KEYS and key not in payload
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Logger factory and setup
# ---------------------------------------------------------------------------

_ROOT = "harvest_kernel"
_setup_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """``harvest_kernel.<name>``; every package logs under this root."""
    return logging.getLogger(f"{_ROOT}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the harvest_kernel root once; later calls are no-ops."""
    root = logging.getLogger(_ROOT)
    with _setup_lock:
        if getattr(root, "_harvest_configured", False):
            return
        chosen = handler or logging.StreamHandler(stream or sys.stderr)
        chosen.setFormatter(StructuredFormatter())
        root.addHandler(chosen)
        root.setLevel(level)
        root.propagate = False
        root._harvest_configured = True  # type: ignore[attr-defined]


def reset_logging() -> None:
    """Drop the handler installed by configure_logging. Tests only."""
    root = logging.getLogger(_ROOT)
    with _setup_lock:
        root.handlers.clear()
        root.setLevel(logging.WARNING)
        root._harvest_configured = False  # type: ignore[attr-defined]
