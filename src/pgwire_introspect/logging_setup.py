"""Logging configuration using structlog.

Logs go to stderr so stdout stays free for generated output.
"""

import logging
import sys
from typing import Any

import structlog


class _StderrLoggerFactory:
    """Look up sys.stderr per logger so captured streams in tests stay valid"""

    def __call__(self, *args: Any, **kwargs: Any) -> structlog.PrintLogger:
        return structlog.PrintLogger(file=sys.stderr)


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog processors and level filtering.

    Args:
        verbose: Emit debug events (every message sent and received)
    """
    level = logging.DEBUG if verbose else logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_StderrLoggerFactory(),
        cache_logger_on_first_use=False,
    )
