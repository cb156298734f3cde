"""Structlog setup for the procpilot CLI.

Library modules only call ``structlog.get_logger``; nothing is configured until
the CLI calls ``configure_logging``. All log output goes to stderr because
stdout carries the command summary.
"""

from __future__ import annotations

import logging as std_logging
import sys
from typing import TextIO

import structlog

PACKAGE_LOGGER = "procpilot"


def level_from_verbosity(verbosity: int) -> int:
    if verbosity <= 0:
        return std_logging.WARNING
    if verbosity == 1:
        return std_logging.INFO
    return std_logging.DEBUG


def configure_logging(
    json_mode: bool = False,
    verbosity: int = 0,
    *,
    stream: TextIO | None = None,
) -> None:
    """Configure structlog and the stdlib ``procpilot`` logger for CLI use."""

    level = level_from_verbosity(verbosity)
    target = stream or sys.stderr

    # Config loading reports through stdlib logging.
    handler = std_logging.StreamHandler(target)
    handler.setFormatter(std_logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    package_logger = std_logging.getLogger(PACKAGE_LOGGER)
    package_logger.handlers[:] = [handler]
    package_logger.setLevel(level)
    package_logger.propagate = False

    processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_mode:
        processors.extend(
            [
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(),
            ]
        )
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=target.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=target),
        cache_logger_on_first_use=True,
    )
