"""
Structured logging configuration using structlog.
"""
import logging

import structlog

from catalog_sync.config import settings


def configure_logging(environment: str | None = None, log_level: str | None = None):
    """
    Configure structured logging for the application.
    Sets up JSON formatting for production, console formatting for development.

    Args:
        environment: Overrides settings.app_environment
        log_level: Overrides settings.log_level
    """
    environment = environment or settings.app_environment
    log_level = (log_level or settings.log_level).upper()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if environment == "production":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
