# WORKFLOW: Logging setup for the API process.
# Used by: api/main.py (at import time)
# Functions:
# 1. configure_logging() - stdlib root logger + structlog pipeline
#
# Services log through logging.getLogger(__name__); the request middleware logs
# key/value events through structlog. Outside development, structlog renders JSON.

import logging

import structlog

from core.config import Settings, settings as default_settings


def configure_logging(config: Settings = None) -> None:
    config = config or default_settings
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.environment == "development"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
