"""structlog setup for processes embedding the certificate storage."""

from __future__ import annotations

import logging

import structlog

from certstore.config import Settings


def configure_logging(settings: Settings) -> None:
    """Install the structlog processor chain and level filter.

    Call once from the host process. Library modules only ever call
    ``structlog.get_logger(__name__)``.
    """
    level = logging.getLevelName(settings.log_level.upper())
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )
