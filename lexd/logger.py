"""Application-wide structured logging."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime
from typing import IO, Any

from lexd.models import ApplicationSettings

LOGGER_NAME = "lexd"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
_LEVEL_LABELS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}
_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "taskName",
}


def _label(levelno: int) -> str:
    return _LEVEL_LABELS.get(levelno, logging.getLevelName(levelno))


def _timestamp(record: logging.LogRecord) -> str:
    moment = datetime.fromtimestamp(record.created).astimezone()
    return moment.isoformat(timespec="milliseconds")


def _attributes(record: logging.LogRecord) -> list[tuple[str, Any]]:
    return [
        (key, value)
        for key, value in vars(record).items()
        if key not in _RESERVED and not key.startswith("_")
    ]


def _text_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        text = "[" + " ".join(str(item) for item in value) + "]"
    else:
        text = str(value)
    if not text or any(ch in ' ="' or not ch.isprintable() for ch in text):
        return json.dumps(text, ensure_ascii=False)
    return text


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        pairs = [
            ("time", _timestamp(record)),
            ("level", _label(record.levelno)),
            ("msg", record.getMessage()),
            *_attributes(record),
        ]
        if record.exc_info:
            pairs.append(("exception", self.formatException(record.exc_info)))
        return " ".join(f"{key}={_text_value(value)}" for key, value in pairs)


class _JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": _timestamp(record),
            "level": _label(record.levelno),
            "msg": record.getMessage(),
        }
        payload.update(_attributes(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False, separators=(",", ":"))


_FORMATTERS = {"json": _JSONFormatter, "text": _TextFormatter, "": _TextFormatter}


def _attach(logger: logging.Logger, handler: logging.Handler, level: int) -> None:
    for old in list(logger.handlers):
        logger.removeHandler(old)
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def init_logger(settings: ApplicationSettings, stream: IO[str] | None = None) -> logging.Logger:
    """Configure the application logger; output goes to stdout when stream is None.

    Raises ValueError for an unknown level or format.
    """
    level = _LEVELS.get(settings.log_level.lower())
    if level is None:
        raise ValueError(f"invalid log level specified: {settings.log_level}")
    log_format = settings.log_format.lower()
    formatter_class = _FORMATTERS.get(log_format)
    if formatter_class is None:
        raise ValueError(f"invalid log format specified: {settings.log_format}")

    handler = logging.StreamHandler(sys.stdout if stream is None else stream)
    handler.setFormatter(formatter_class())

    logger = logging.getLogger(LOGGER_NAME)
    _attach(logger, handler, level)

    logger.info("Logger initialized", extra={"level": _label(level), "format": log_format})
    return logger


def get_logger() -> logging.Logger:
    """Return the application logger.

    When it has not been configured, a text logger writing to stderr at
    info level is set up and the missing initialization is reported.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_TextFormatter())
        _attach(logger, handler, logging.INFO)
        logger.error("Global logger accessed before initialization. Using default.")
    return logger