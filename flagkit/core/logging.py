"""
Structured logging setup.

All modules log through `structlog.get_logger()` with key/value pairs:

    logger.info("Rollout percentage updated", feature_name="beta_ui", old=10, new=25)

`configure_logging()` is called once per process (API lifespan and
Celery worker start-up).
"""

import logging
import sys

import structlog

from flagkit.core.config import settings
from flagkit.utils.context import add_request_context


def configure_logging(
    level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Configure stdlib logging and structlog for JSON or console output."""
    level_name = (level or settings.log_level).upper()
    log_level = getattr(logging, level_name, logging.INFO)
    renderer_format = log_format or settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    if renderer_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_request_context,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
