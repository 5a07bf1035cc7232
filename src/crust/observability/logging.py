"""Structured logging for crust.

Provides:
- JSON-formatted logs for log aggregation systems
- Order and customer correlation through context variables
- A readable console format for development

Usage:
    from crust.observability.logging import LogContext, configure_logging

    configure_logging(json_format=True, level="INFO")

    with LogContext(order_id=order.id):
        logger.info("Aggregating order")  # record carries order_id
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")
order_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("order_id", default="")
customer_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("customer_id", default="")

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "request_id": request_id_var,
    "order_id": order_id_var,
    "customer_id": customer_id_var,
}

# Attributes every LogRecord carries; anything else was passed via ``extra=``
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

# Console labels for correlation values, in display order
_CONSOLE_LABELS = (("request_id", "req"), ("order_id", "order"), ("customer_id", "customer"))

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"


def current_context() -> dict[str, str]:
    """Non-empty correlation values for the running task."""
    return {name: var.get() for name, var in _CONTEXT_VARS.items() if var.get()}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    {"timestamp": "...", "level": "WARNING", "logger": "crust.cache.redis",
     "message": "...", "order_id": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            **current_context(),
        }
        entry.update(
            (key, _jsonable(value))
            for key, value in vars(record).items()
            if key not in _RECORD_FIELDS and not key.startswith("_")
        )

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Single-line format for a terminal.

    2026-01-10 12:34:56 | INFO     | crust.services.aggregation | Aggregated order | order=3f2a9c1e
    """

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.use_colors = use_colors and sys.stderr.isatty()

    def _level(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:8}"
        if self.use_colors and record.levelno in _LEVEL_COLORS:
            return f"{_LEVEL_COLORS[record.levelno]}{level}{_RESET}"
        return level

    def format(self, record: logging.LogRecord) -> str:
        parts = [self.formatTime(record, self.datefmt), self._level(record), record.name, record.getMessage()]

        context = current_context()
        tags = [f"{label}={context[key][:8]}" for key, label in _CONSOLE_LABELS if key in context]
        if tags:
            parts.append(" ".join(tags))

        line = " | ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(json_format: bool = True, level: str = "INFO", use_colors: bool = True) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        json_format: JSON lines for log shippers; otherwise the console format
        level: Root level name
        use_colors: Colour level names when stderr is a terminal
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else ConsoleFormatter(use_colors=use_colors))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())

    for noisy in ("sqlalchemy.engine", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


class LogContext:
    """Context manager for adding temporary log context.

    Usage:
        with LogContext(order_id="...", customer_id="..."):
            logger.info("Updating behavior")
    """

    def __init__(self, **kwargs: str) -> None:
        unknown = set(kwargs) - set(_CONTEXT_VARS)
        if unknown:
            raise ValueError(f"Unknown log context keys: {sorted(unknown)}")
        self.extra = kwargs
        self._tokens: dict[str, contextvars.Token[str]] = {}

    def __enter__(self) -> LogContext:
        for key, value in self.extra.items():
            self._tokens[key] = _CONTEXT_VARS[key].set(value)
        return self

    def __exit__(self, *args: Any) -> None:
        for key, token in self._tokens.items():
            _CONTEXT_VARS[key].reset(token)
        self._tokens.clear()
