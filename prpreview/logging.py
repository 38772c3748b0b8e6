"""structlog configuration for the service."""

from __future__ import annotations

import logging
import sys

import structlog

from prpreview.log_redaction import make_log_redactor
from prpreview.settings import Settings, settings as default_settings


def configure_logging(config: Settings | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        config: Settings to read level and format from; defaults to the
            environment-backed instance.
    """
    config = config or default_settings
    level = getattr(logging, config.log_level(), logging.INFO)
    if config.log_format() == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            make_log_redactor(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
