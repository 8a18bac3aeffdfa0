"""Astral Core Trust - structured logging setup."""
from __future__ import annotations

import logging

import structlog

from astral_trust.config import TrustServiceConfig


def configure_logging(settings: TrustServiceConfig | None = None) -> None:
    """Configure structlog for the process hosting the trust core."""
    settings = settings or TrustServiceConfig()
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    structlog.get_logger(__name__).info(
        "logging_configured", service=settings.service_name, level=settings.log_level,
    )
