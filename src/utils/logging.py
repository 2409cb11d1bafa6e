"""Structured logging setup.

All modules obtain their logger through get_logger(__name__) and may pass
keyword context (logger.info("Decision logged", decision_id=...)).
"""
import logging
import sys

import structlog

from config.settings import get_settings

_configured = False


def configure_logging():
    """Configure stdlib logging and structlog once per process."""
    global _configured
    if _configured:
        return

    settings = get_settings()
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if settings.ENV == "production":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str):
    """Get a structlog logger bound to a module name."""
    configure_logging()
    return structlog.get_logger(name)
