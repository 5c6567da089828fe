# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Structured logging for keg.

Library modules log through ``logging.getLogger(__name__)``; the process
entry point calls ``configure_logging`` once to attach JSON or text output
to the ``keg`` logger hierarchy. Engine events (commits, rollbacks,
evictions) go through ``log_event`` so their fields survive in both formats.
"""

import logging
import json
import sys
from datetime import datetime, UTC
from typing import Any, Dict, Optional
from pathlib import Path

from keg.core.errors import ConfigurationError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Attributes every LogRecord carries; anything else came in through ``extra``
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


def event_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to a record via ``extra``."""
    return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One object per line; event fields become top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(event_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; event fields are appended as key=value."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = event_fields(record)
        if not fields:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        head, sep, tail = line.partition("\n")
        return f"{head} [{rendered}]{sep}{tail}"


def get_logger(
    name: str,
    log_level: str = "INFO",
    log_format: str = "text",
    log_file: Optional[Path] = None
) -> logging.Logger:
    """
    Get configured logger instance.

    Args:
        name: Logger name (usually "keg")
        log_level: One of LOG_LEVELS, case-insensitive
        log_format: "json" or "text"
        log_file: Optional log file path, written in the same format

    Returns:
        Configured logger instance

    Raises:
        ConfigurationError: If the level or format is unknown
    """
    level = log_level.upper()
    if level not in LOG_LEVELS:
        raise ConfigurationError(f"Unknown log level {log_level!r}")
    if log_format not in ("json", "text"):
        raise ConfigurationError(f"Unknown log format {log_format!r}")

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level))

    # Reconfiguring replaces handlers instead of stacking them
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = JSONFormatter() if log_format == "json" else TextFormatter()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


def configure_logging(config: Any) -> logging.Logger:
    """Attach handlers to the root ``keg`` logger from a Config."""
    return get_logger(
        "keg",
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "INFO",
    **fields: Any
) -> None:
    """
    Log a named engine event with structured fields.

    Example:
        log_event(logger, "package_committed", package="jq", version="1.7.1")
    """
    logger.log(getattr(logging, level.upper()), event, extra=fields)
