"""
Port Coordinator - Structured Logging
=====================================

structlog configuration shared by the API process and any caller that
embeds the coordination services directly.
"""

import logging

import structlog

from portcoord.core.config import settings

_configured = False


def configure_logging(force: bool = False) -> None:
    """
    Configure structlog on top of the stdlib logging module.

    JSON output in production, colored console output everywhere else.
    Safe to call more than once; only the first call takes effect unless
    ``force`` is set.
    """
    global _configured
    if _configured and not force:
        return

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True
