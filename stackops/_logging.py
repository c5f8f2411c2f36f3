# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Logging setup for the command line entry points.

Library modules only call ``structlog.get_logger()``; rendering is decided
once here. Log lines go to stderr so command output on stdout stays
clean (the command document captures both).
"""

import logging
import os
import sys
from enum import Enum

import structlog


class LogLevel(str, Enum):
    """Supported log levels."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


def get_log_level(default: LogLevel = LogLevel.INFO) -> LogLevel:
    """Log level from STACKOPS_LOG_LEVEL, falling back to default."""
    value = os.getenv("STACKOPS_LOG_LEVEL", "").strip().lower()
    try:
        return LogLevel(value) if value else default
    except ValueError:
        return default


def configure_logging(level: LogLevel | str = LogLevel.INFO, json_logs: bool = False) -> None:
    """
    Configure structlog for console or JSON output.

    Args:
        level: Minimum level to emit
        json_logs: Render one JSON object per line instead of console text
    """
    numeric_level = logging.getLevelName(LogLevel(level).value.upper())

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        # Tests swap sys.stderr between invocations
        cache_logger_on_first_use=False,
    )
