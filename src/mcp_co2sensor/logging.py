"""
Structured logging for the CO2 Sensor MCP Server.

Application logs are JSON objects written to stderr, because stdout carries
the JSON-RPC stream. A separate plain-text sensor log records acquisition
events in an append-only file; failures to write it never reach the caller.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_co2sensor.config import LoggingConfig

PACKAGE_LOGGER = "mcp_co2sensor"
SENSOR_LOGGER = "mcp_co2sensor.sensor_log"

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_SENSOR_LOG_PATH = "~/co2_level.log"

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each record has timestamp (ISO 8601, UTC), level, logger and message,
    plus any fields passed through the `extra` argument. With include_location
    the emitting module, function and line are added as well.
    """

    def __init__(self, *, include_location: bool = False) -> None:
        super().__init__()
        self.include_location = include_location

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_location:
            log_entry["module"] = record.module
            log_entry["function"] = record.funcName
            log_entry["line"] = record.lineno

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_ATTRS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class _QuietFileHandler(logging.FileHandler):
    """FileHandler that reports a write failure once, then stays silent."""

    _reported = False

    def emit(self, record: logging.LogRecord) -> None:
        # FileHandler opens the file lazily, outside StreamHandler's error path
        try:
            super().emit(record)
        except OSError:
            self.handleError(record)

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        if not self._reported:
            self._reported = True
            super().handleError(record)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    sensor_log_path: str | None = DEFAULT_SENSOR_LOG_PATH,
    debug_mode: bool = False,
) -> logging.Logger:
    """
    Configure the package loggers.

    Args:
        config: Optional LoggingConfig; overrides the keyword arguments.
        level: Log level if no config is provided.
        json_format: Whether to use JSON formatting on stderr.
        sensor_log_path: Append-only sensor log file, or None to disable it.
        debug_mode: Force DEBUG level and add source locations to JSON records.

    Returns:
        The root logger for the mcp_co2sensor package.

    Example:
        >>> logger = setup_logging(level="DEBUG", sensor_log_path=None)
        >>> logger.info("Server started", extra={"tools": 6})
    """
    if config is not None:
        level = config.level
        json_format = config.json_format
        sensor_log_path = config.sensor_log_path
        debug_mode = config.debug_mode

    if debug_mode:
        level = "DEBUG"

    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(log_level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    if json_format:
        handler.setFormatter(JSONFormatter(include_location=debug_mode))
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False

    _setup_sensor_log(sensor_log_path)

    return logger


def _setup_sensor_log(path: str | None) -> None:
    """Attach the append-only file sink to the sensor log logger."""
    sensor_logger = logging.getLogger(SENSOR_LOGGER)
    for existing in list(sensor_logger.handlers):
        sensor_logger.removeHandler(existing)
        existing.close()
    sensor_logger.setLevel(logging.INFO)
    # Sensor log lines stay out of the application log
    sensor_logger.propagate = False

    if not path:
        sensor_logger.addHandler(logging.NullHandler())
        return

    file_handler = _QuietFileHandler(
        Path(path).expanduser(), mode="a", encoding="utf-8", delay=True
    )
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    sensor_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    The "mcp_co2sensor." prefix is added if not present, so every module logs
    under the package logger configured by setup_logging().

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Module initialized")
    """
    if not name.startswith(PACKAGE_LOGGER):
        name = f"{PACKAGE_LOGGER}.{name}"

    return logging.getLogger(name)


def get_sensor_log() -> logging.Logger:
    """Return the append-only sensor log logger."""
    return logging.getLogger(SENSOR_LOGGER)
