"""Structured logging with JSON (production) and console (development) output."""

from __future__ import annotations

import datetime as dt
import enum
import json
import logging
import sys
from typing import IO, Any, Mapping, MutableMapping

ROOT_NAME = "tradedesk"

DPANIC = 42
PANIC = 45
FATAL = logging.CRITICAL

logging.addLevelName(DPANIC, "DPANIC")
logging.addLevelName(PANIC, "PANIC")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": DPANIC,
    "panic": PANIC,
    "fatal": FATAL,
}
_LEVEL_NAMES = {number: name for name, number in _LEVELS.items()}

_COLORS = {
    logging.DEBUG: "\x1b[35m",
    logging.INFO: "\x1b[34m",
    logging.WARNING: "\x1b[33m",
}
_RED = "\x1b[31m"
_RESET = "\x1b[0m"

# Keyword arguments the logging machinery understands; everything else is a field.
_STANDARD_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})


def log_level(level: str) -> int:
    """Map a level name such as ``"warn"`` to a logging level; unknown names give INFO."""
    return _LEVELS.get(level, logging.INFO)


def _level_name(levelno: int) -> str:
    return _LEVEL_NAMES.get(levelno, logging.getLevelName(levelno).lower())


def _record_fields(record: logging.LogRecord) -> dict[str, Any]:
    return dict(getattr(record, "fields", None) or {})


def _short_name(record: logging.LogRecord) -> str:
    if record.name == ROOT_NAME:
        return ""
    prefix = ROOT_NAME + "."
    return record.name[len(prefix):] if record.name.startswith(prefix) else record.name


def _json_default(value: Any) -> Any:
    if isinstance(value, dt.timedelta):
        return value.total_seconds() * 1000
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    return str(value)


def _console_default(value: Any) -> Any:
    if isinstance(value, dt.timedelta):
        return str(value)
    return _json_default(value)


class JsonFormatter(logging.Formatter):
    """Render a record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        moment = dt.datetime.fromtimestamp(record.created).astimezone()
        timestamp = (
            moment.strftime("%Y-%m-%dT%H:%M:%S")
            + f".{moment.microsecond // 1000:03d}"
            + moment.strftime("%z")
        )
        entry: dict[str, Any] = {"level": _level_name(record.levelno), "timestamp": timestamp}
        name = _short_name(record)
        if name:
            entry["logger"] = name
        entry["caller"] = f"{record.filename}:{record.lineno}"
        entry["msg"] = record.getMessage()
        for key, value in _record_fields(record).items():
            entry.setdefault(key, value)
        if record.exc_info:
            entry["stacktrace"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=_json_default)


class ConsoleFormatter(logging.Formatter):
    """Render a record as tab-separated, human-readable text."""

    def __init__(self, color: bool = False) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        moment = dt.datetime.fromtimestamp(record.created)
        parts = [moment.strftime("%H:%M:%S") + f".{moment.microsecond // 1000:03d}"]
        level = _level_name(record.levelno).upper()
        if self.color:
            level = f"{_COLORS.get(record.levelno, _RED)}{level}{_RESET}"
        parts.append(level)
        name = _short_name(record)
        if name:
            parts.append(name)
        parts.append(f"{record.filename}:{record.lineno}")
        parts.append(record.getMessage())
        fields = _record_fields(record)
        if fields:
            parts.append(json.dumps(fields, default=_console_default))
        text = "\t".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


class FieldLogger(logging.LoggerAdapter):
    """Logger adapter that carries structured fields.

    Keyword arguments other than the standard logging ones become fields:
    ``log.info("Started", port="8080")``.
    """

    def __init__(self, logger: logging.Logger, fields: Mapping[str, Any] | None = None) -> None:
        super().__init__(logger, dict(fields or {}))

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        fields = dict(self.extra or {})
        passthrough: dict[str, Any] = {}
        for key, value in kwargs.items():
            if key in _STANDARD_KWARGS:
                passthrough[key] = value
            else:
                fields[key] = value
        extra = dict(passthrough.pop("extra", None) or {})
        extra["fields"] = fields
        passthrough["extra"] = extra
        return msg, passthrough

    def bind(self, **kwargs: Any) -> "FieldLogger":
        """Return a logger with these fields added to the current ones."""
        return FieldLogger(self.logger, {**(self.extra or {}), **kwargs})


def _isatty(stream: IO[str]) -> bool:
    try:
        return bool(stream.isatty())
    except (AttributeError, ValueError):
        return False


def configure(environment: str, level: str, stream: IO[str] | None = None) -> FieldLogger:
    """Set up the package logger: JSON in production, console text otherwise."""
    target = sys.stdout if stream is None else stream
    handler = logging.StreamHandler(target)
    if environment == "production":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(ConsoleFormatter(color=_isatty(target)))

    root = logging.getLogger(ROOT_NAME)
    for old in list(root.handlers):
        old.flush()
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(log_level(level))
    root.propagate = False
    return FieldLogger(root)


def bind(**kwargs: Any) -> FieldLogger:
    """Return the package logger carrying the given fields."""
    return FieldLogger(logging.getLogger(ROOT_NAME), kwargs)


def named(name: str, **kwargs: Any) -> FieldLogger:
    """Return a named child logger carrying the given fields."""
    return FieldLogger(logging.getLogger(f"{ROOT_NAME}.{name}"), kwargs)


def sync() -> None:
    """Flush every handler of the package logger."""
    for handler in logging.getLogger(ROOT_NAME).handlers:
        handler.flush()