"""
Logging configuration for the spatialsql query core.

Everything logs under the ``spatialsql`` logger. ``setup_logging`` attaches a
console handler (colored in development) and, if configured, a rotating log
file that can be written as JSON lines. Query-scoped fields such as a query
id are stamped on records with ``LogContext``.
"""

import json
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from spatialsql.core.config import settings

PACKAGE_LOGGER = "spatialsql"

# Third-party loggers that report routine PROJ grid and GEOS activity
QUIET_LOGGERS = ("pyproj", "shapely", "pyarrow")

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to a record through ``extra`` or ``LogContext``."""
    return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with timing and query fields at top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "source": f"{record.module}:{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
        }
        payload.update(record_extras(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ColoredFormatter(logging.Formatter):
    """Colors the level name for terminals."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno)
        if color is None:
            return super().format(record)
        plain = record.levelname
        record.levelname = f"{color}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def get_log_level(level_name: str) -> int:
    """Logging constant for a level name, INFO if the name is unknown."""
    level = logging.getLevelName(level_name.upper())
    return level if isinstance(level, int) else logging.INFO


def _console_handler(level: int) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    if settings.environment == "development":
        formatter: logging.Formatter = ColoredFormatter(
            "%(levelname)s | %(asctime)s | %(name)s:%(lineno)d | %(message)s", DATE_FORMAT
        )
    else:
        formatter = logging.Formatter("%(levelname)s - %(asctime)s - %(name)s - %(message)s", DATE_FORMAT)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    return handler


def _file_handler(path: Path, level: int, json_logs: bool) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
    )
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(levelname)s - %(name)s - %(funcName)s:%(lineno)d - %(message)s",
                DATE_FORMAT,
            )
        )
    handler.setLevel(level)
    return handler


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    json_logs: Optional[bool] = None,
    enable_console: bool = True,
) -> logging.Logger:
    """
    Configure the ``spatialsql`` logger.

    Arguments left as None fall back to ``settings``. Calling this again
    replaces the handlers installed by the previous call.

    Args:
        log_level: Level name, e.g. "DEBUG"
        log_file: Rotating log file; no file handler if unset
        json_logs: Write the log file as JSON lines
        enable_console: Attach a stdout handler

    Returns:
        The configured package logger
    """
    level_name = log_level or settings.log_level
    log_file = log_file if log_file is not None else settings.log_file
    json_logs = settings.json_logs if json_logs is None else json_logs
    level = get_log_level(level_name)

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)

    if enable_console:
        logger.addHandler(_console_handler(level))
    if log_file is not None:
        logger.addHandler(_file_handler(Path(log_file), level, json_logs))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(
        f"Logging configured: level={level_name}, environment={settings.environment}, "
        f"file={log_file}, json={json_logs}"
    )
    return logger


class LogContext:
    """
    Stamps fields on every record created while the context is active.

    Usage:
        with LogContext(query_id="q-17"):
            spatial_join(left, "geom", right, "geom", JoinPredicate.intersects())
    """

    def __init__(self, **fields: Any):
        self.fields = fields
        self._previous: Optional[Any] = None

    def __enter__(self) -> "LogContext":
        previous = logging.getLogRecordFactory()
        fields = self.fields

        def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = previous(*args, **kwargs)
            record.__dict__.update(fields)
            return record

        self._previous = previous
        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._previous is not None:
            logging.setLogRecordFactory(self._previous)
            self._previous = None
