"""Structured logging setup."""

import logging

import structlog

from mcphost.config import Settings


def configure_logging(settings: Settings) -> None:
    """Configure structlog for the process.

    Console rendering in debug mode, JSON lines otherwise. Events below
    ``settings.log_level`` are dropped by the bound logger itself.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
