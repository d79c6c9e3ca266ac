from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

__all__ = [
    "LOG_FORMAT_CONSOLE",
    "LOG_FORMAT_ENV",
    "LOG_FORMAT_JSON",
    "LogContext",
    "StructuredConsoleFormatter",
    "StructuredJSONFormatter",
    "configure_logging",
    "get_logger",
]


LOG_FORMAT_ENV = "HC_HTTPX_LOG_FORMAT"
LOG_FORMAT_JSON = "json"
LOG_FORMAT_CONSOLE = "console"

CONTEXT_KEYS = ("client_id", "request_id", "policy")
_LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("hc_httpx_log_context")

_DEFAULT_CONSOLE_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(message)s "
    "client_id=%(client_id)s request_id=%(request_id)s policy=%(policy)s"
)

_RESERVED_FIELDS = {"timestamp", "level", "logger", "message", "exception", "stack"}

_LOG_RECORD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

_HANDLER_MARK = "_hc_httpx_format"


def _normalize_log_format(value: str | None) -> str:
    if value and value.strip().lower() == LOG_FORMAT_CONSOLE:
        return LOG_FORMAT_CONSOLE
    return LOG_FORMAT_JSON


def _json_default(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return repr(value)


def _context_snapshot() -> dict[str, Any]:
    current = _LOG_CONTEXT.get({})
    snapshot: dict[str, Any] = {key: current.get(key) for key in CONTEXT_KEYS}
    snapshot.update({key: value for key, value in current.items() if key not in snapshot})
    return snapshot


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _LOG_RECORD_ATTRS and key not in _RESERVED_FIELDS and not key.startswith("_")
    }


class LogContext:
    """Async-safe structured logging context.

    Values bound inside the ``with`` block are attached to every record
    formatted by the hc-httpx formatters, including records emitted from
    tasks spawned inside the block.

    Args:
        client_id: Identifier of the owning client.
        request_id: Request correlation identifier.
        policy: Name of the policy emitting the record.
        **extra: Additional context values; ``None`` values are ignored.
    """

    def __init__(
        self,
        client_id: str | None = None,
        request_id: str | None = None,
        policy: str | None = None,
        **extra: Any,
    ) -> None:
        values = {"client_id": client_id, "request_id": request_id, "policy": policy, **extra}
        self._values = {key: value for key, value in values.items() if value is not None}
        self._token: contextvars.Token[dict[str, Any]] | None = None

    def __enter__(self) -> LogContext:
        self._token = _LOG_CONTEXT.set({**_LOG_CONTEXT.get({}), **self._values})
        return self

    def __exit__(self, exc_type: Any, exc: Any, traceback: Any) -> None:
        if self._token is not None:
            _LOG_CONTEXT.reset(self._token)
            self._token = None

    @classmethod
    def bind(cls, **values: Any) -> None:
        updates = {key: value for key, value in values.items() if value is not None}
        _LOG_CONTEXT.set({**_LOG_CONTEXT.get({}), **updates})

    @classmethod
    def clear(cls) -> None:
        _LOG_CONTEXT.set({})

    @classmethod
    def snapshot(cls) -> dict[str, Any]:
        return _context_snapshot()


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context_snapshot().items():
            if key not in record.__dict__:
                record.__dict__[key] = "-" if value is None else value
        return True


class StructuredJSONFormatter(logging.Formatter):
    """Formats log records as one JSON object per line.

    Context values and ``extra=`` fields are merged into the top-level object.
    """

    def __init__(
        self,
        *,
        datefmt: str | None = None,
        json_default: Any | None = None,
        ensure_ascii: bool = True,
    ) -> None:
        super().__init__(datefmt=datefmt)
        self._json_default = json_default or _json_default
        self._ensure_ascii = ensure_ascii

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in _context_snapshot().items():
            if key not in _RESERVED_FIELDS:
                payload[key] = value
        payload.update(_record_extras(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = record.stack_info
        return json.dumps(payload, default=self._json_default, ensure_ascii=self._ensure_ascii)


class StructuredConsoleFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = None, *, datefmt: str | None = None) -> None:
        super().__init__(fmt=fmt or _DEFAULT_CONSOLE_FORMAT, datefmt=datefmt)


def _install_handler(
    logger: logging.Logger,
    formatter: logging.Formatter,
    *,
    format_kind: str,
    level: int | None,
    stream: Any,
) -> None:
    for handler in logger.handlers:
        if getattr(handler, _HANDLER_MARK, None) == format_kind:
            return
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    handler.setLevel(level or logging.NOTSET)
    setattr(handler, _HANDLER_MARK, format_kind)
    logger.addHandler(handler)
    if level is not None:
        logger.setLevel(level)
    elif logger.level == logging.NOTSET:
        logger.setLevel(logging.INFO)
    logger.propagate = False


def get_logger(
    name: str,
    *,
    log_format: str | None = None,
    json_formatter: logging.Formatter | None = None,
    console_formatter: logging.Formatter | None = None,
    level: int | None = None,
    stream: Any | None = None,
) -> logging.Logger:
    """Return a logger with a structured handler attached.

    The format is taken from ``log_format``, else from the
    ``HC_HTTPX_LOG_FORMAT`` environment variable, else JSON. Calling this
    repeatedly for the same name and format does not stack handlers.
    """
    resolved = _normalize_log_format(log_format or os.getenv(LOG_FORMAT_ENV))
    formatter: logging.Formatter
    if resolved == LOG_FORMAT_CONSOLE:
        formatter = console_formatter or StructuredConsoleFormatter()
    else:
        formatter = json_formatter or StructuredJSONFormatter()
    logger = logging.getLogger(name)
    _install_handler(logger, formatter, format_kind=resolved, level=level, stream=stream)
    return logger


def configure_logging(
    log_format: str | None = None,
    *,
    level: int | str | None = None,
    stream: Any | None = None,
) -> logging.Logger:
    """Attach a structured handler to the ``hc_httpx`` package logger."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")
    return get_logger("hc_httpx", log_format=log_format, level=level, stream=stream)
