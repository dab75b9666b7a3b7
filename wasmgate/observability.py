"""
Wasmgate Logging Setup

Structured logging configuration for processes embedding the plugin core.
Library modules only call structlog.get_logger(__name__); the embedding
application decides rendering by calling setup_logging once at startup.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

from wasmgate.config import get_config


def setup_logging(log_level: Optional[str] = None, json: Optional[bool] = None) -> None:
    """Configure structured logging."""
    config = get_config()
    level_name = (log_level or config.log_level).upper()
    use_json = config.log_json if json is None else json

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level_name, logging.INFO),
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
