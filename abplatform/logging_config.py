"""Structured logging setup (structlog, JSON lines on stdout)."""
import logging
from typing import Optional

import structlog

from abplatform.config import settings


def configure_logging(level: str = settings.log_level):
    """Configure structlog once for the whole process."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False
    )


configure_logging()


def get_logger(name: Optional[str] = None):
    """Get configured structured logger, tagged with the module name."""
    logger = structlog.get_logger()
    if name:
        return logger.bind(module=name)
    return logger
