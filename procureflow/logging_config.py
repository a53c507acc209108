# procureflow/logging_config.py
"""
JSON-lines logging for ProcureFlow.

Every logger lives under ``procureflow.``.  Request-scoped fields
(correlation id, user id, route) come from ``LogContext`` and are merged into
each record together with anything passed via ``extra=``.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

_LOGGER_PREFIX = "procureflow"
_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# attributes every LogRecord has; anything else arrived through extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "taskName"}


class LogContext:
    """Request-scoped log fields, safe across threads and asyncio tasks."""

    _vars: Dict[str, ContextVar] = {
        name: ContextVar(f"procureflow_{name}", default=None)
        for name in ("correlation_id", "user_id", "route")
    }

    @classmethod
    def set(cls, **fields: Optional[str]) -> None:
        for name, value in fields.items():
            if value is not None:
                cls._vars[name].set(value)

    @classmethod
    def get_all(cls) -> Dict[str, str]:
        return {name: var.get() for name, var in cls._vars.items() if var.get() is not None}

    @classmethod
    @contextmanager
    def bind(cls, **fields: Optional[str]) -> Iterator[None]:
        """Set fields for the duration of the block, then restore them."""
        tokens = [cls._vars[name].set(value) for name, value in fields.items() if value is not None]
        try:
            yield
        finally:
            for token in reversed(tokens):
                token.var.reset(token)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, val in vars(record).items():
            if key not in _RECORD_ATTRS:
                payload.setdefault(key, val)

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            kind = getattr(exc, "kind", None)
            if kind:
                payload["exc_kind"] = kind
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    json_lines: bool = True,
    stream: Any = None,
    handler: Optional[logging.Handler] = None,
) -> None:
    """Attach one handler to the ``procureflow`` logger. Later calls are no-ops."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter() if json_lines else logging.Formatter(_PLAIN_FORMAT))

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    root.propagate = False
    root.addHandler(h)


def reset_logging() -> None:
    """Undo configure_logging (tests only)."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    root.propagate = True
