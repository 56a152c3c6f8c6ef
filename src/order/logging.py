"""Structured logging configuration using structlog.

Call setup_logging() once at startup before any log calls.
"""

from __future__ import annotations

import logging
import sys

import structlog


def setup_logging(*, json_output: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog for the coordinator.

    Args:
        json_output: If True, render logs as JSON lines. If False, use console output.
        log_level: Minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    # Logs go to stderr so `order status` output stays machine readable.
    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
