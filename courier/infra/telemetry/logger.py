"""
Structured Logger
=================

Structured logging for the orchestrator with request-scoped context.

Design:
  - Event-style messages (``cache_evicted``) with keyword fields
  - JSON output for machine parsing, one-line human format for development
  - Automatic request_id injection from a context variable, so log lines
    emitted inside a dispatch carry the id of the request being served
  - Zero external dependencies beyond stdlib
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# ── Context Variables ──────────────────────────────────────────────

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_group_key: ContextVar[str | None] = ContextVar("group_key", default=None)

def set_request_context(*, request_id: str | None = None, group_key: str | None = None) -> None:
    """Set request-scoped context for log enrichment."""
    if request_id is not None:
        _request_id.set(request_id)
    if group_key is not None:
        _group_key.set(group_key)

def clear_request_context() -> None:
    """Clear all request-scoped context."""
    _request_id.set(None)
    _group_key.set(None)

# ── Structured Formatter ──────────────────────────────────────────

_RESERVED = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "pathname", "filename", "module", "levelno", "levelname",
    "thread", "threadName", "process", "processName", "msecs",
    "taskName", "message",
})

_JSON_SAFE = (str, int, float, bool, type(None))

class StructuredFormatter(logging.Formatter):
    """JSON log formatter with automatic context injection."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback
        self._pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "line": record.lineno,
            "pid": self._pid,
        }

        ctx_fields = {
            "request_id": _request_id.get(None),
            "group_key": _group_key.get(None),
        }
        entry["context"] = {k: v for k, v in ctx_fields.items() if v is not None}

        extras: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RESERVED:
                continue
            extras[key] = val if isinstance(val, _JSON_SAFE) else str(val)
        if extras:
            entry["data"] = extras

        if record.exc_info and self._include_tb:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "traceback": traceback.format_exception(exc_type, exc_value, exc_tb)
                if exc_tb
                else None,
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)

        req_id = (entry["context"].get("request_id") or "-")[:8]
        fields = " ".join(f"{k}={v}" for k, v in extras.items())
        return (
            f"{entry['timestamp']} | {entry['level']:8s} | {req_id} | "
            f"{entry['logger']}:{entry['line']} | {entry['event']} {fields}"
        ).rstrip()

# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Wrapper around stdlib logger providing structured logging helpers.

    Usage:
        log = StructuredLogger("courier.infra.runtime")
        log.info("batch_flushed", group_key="users", size=3)
        log.warning("cache_read_failed", key=key)
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def _log(self, level: int, event: str, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=kwargs, stacklevel=3)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        if exc:
            self._logger.error(event, extra=kwargs, exc_info=exc, stacklevel=2)
        else:
            self._log(logging.ERROR, event, **kwargs)

    def bind(self, **context: Any) -> BoundLogger:
        """Create a child logger with bound context fields."""
        return BoundLogger(self, context)

class BoundLogger:
    """Logger with pre-bound context fields."""

    __slots__ = ("_context", "_parent")

    def __init__(self, parent: StructuredLogger, context: dict[str, Any]):
        self._parent = parent
        self._context = context

    def _merged(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {**self._context, **kwargs}

    def debug(self, event: str, **kwargs: Any) -> None:
        self._parent.debug(event, **self._merged(kwargs))

    def info(self, event: str, **kwargs: Any) -> None:
        self._parent.info(event, **self._merged(kwargs))

    def warning(self, event: str, **kwargs: Any) -> None:
        self._parent.warning(event, **self._merged(kwargs))

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._parent.error(event, exc=exc, **self._merged(kwargs))

# ── Setup ──────────────────────────────────────────────────────────

_initialized = False

def setup_logging(*, level: str = "INFO", json_output: bool = False) -> None:
    """
    Initialize logging for the ``courier`` logger tree. Call once at startup.

    Only the library's own logger is configured; the host application's
    root logger is left alone.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    root = logging.getLogger("courier")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    root.addHandler(console)

    # Transport internals are noisy at INFO
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
