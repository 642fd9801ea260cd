"""Logging utilities for store synchronization.

Provides a structured JSON logging option for production environments, a
TRACE level for request/response bodies, and ``TaskLogger``: the leveled,
printf-style logger capability handed to clients and sync jobs.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

__all__ = [
    "TRACE",
    "JSONFormatter",
    "TaskLogger",
    "get_task_logger",
    "setup_logging",
]

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Formatter that outputs log records as JSON.

    Example output:
        {"timestamp": "2025-01-15T10:30:00.123Z", "level": "INFO",
         "logger": "storesync.lib.sync", "message": "collected 250 records",
         "extra": {"store": "acme", "resource": "orders"}}
    """

    def __init__(self, exclude_fields: Optional[list[str]] = None):
        super().__init__()
        self.exclude_fields = exclude_fields or []

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_attrs = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and k not in self.exclude_fields
        }
        if extra_attrs:
            log_data["extra"] = extra_attrs

        return json.dumps(log_data, default=str)


class TaskLogger:
    """Logger with store/resource context.

    Every message is prefixed with ``[store][resource]`` and carries the
    context as structured extras, so both console and JSON output identify
    the task that produced it.

    Example:
        log = TaskLogger("storesync.lib.sync", store="acme", resource="orders")
        log.info("fetching %s page %d", "orders", 2)
    """

    def __init__(
        self,
        name: Union[str, logging.Logger],
        **context: Any,
    ):
        self._logger = name if isinstance(name, logging.Logger) else logging.getLogger(name)
        self._context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    def bind(self, **context: Any) -> "TaskLogger":
        """Return a new logger with additional context."""
        merged = dict(self._context)
        merged.update({k: v for k, v in context.items() if v is not None})
        return TaskLogger(self._logger, **merged)

    def _prefix(self) -> str:
        store = self._context.get("store")
        resource = self._context.get("resource")
        if store is None and resource is None:
            return ""
        parts = [f"[{store:<21}]" if store is not None else ""]
        if resource is not None:
            parts.append(f"[{resource:<9}]")
        return "".join(parts) + " "

    def log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = dict(kwargs.pop("extra", None) or {})
        extra.update(self._context)
        self._logger.log(level, self._prefix() + msg, *args, extra=extra, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def trace(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log request/response bodies and other high-volume detail."""
        self.log(TRACE, msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        kwargs["exc_info"] = True
        self.log(logging.ERROR, msg, *args, **kwargs)


def get_task_logger(
    name: str,
    store: Optional[str] = None,
    resource: Optional[str] = None,
) -> TaskLogger:
    """Get a task logger for a store/resource pair."""
    return TaskLogger(name, store=store, resource=resource)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
    level: Optional[Union[int, str]] = None,
) -> None:
    """Configure logging for a sync or compaction run.

    Args:
        verbose: Enable debug-level logging
        json_format: Use JSON output format (for log aggregation)
        log_file: Optional file path to write logs to
        level: Explicit level (name or number); overrides ``verbose``
    """
    if level is None:
        resolved = logging.DEBUG if verbose else logging.INFO
    elif isinstance(level, str):
        resolved = TRACE if level.upper() == "TRACE" else logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    else:
        resolved = level

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(resolved)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(resolved)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(resolved)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
