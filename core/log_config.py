"""
structlog setup shared by the CLI entry points.

Modules only call ``structlog.get_logger()``; this decides how the events
are rendered (JSON lines for production, console for local debugging).
"""
from __future__ import annotations

import logging
import sys

import structlog

_configured = False


def configure_logging(debug: bool = False) -> None:
    global _configured
    if _configured:
        return

    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _configured = True
