"""
Structured logging setup.

Library modules only call ``structlog.get_logger(__name__)``; applications
(and the CLI) call ``configure_logging`` once at startup.
"""

import logging
import os
import sys
from typing import Optional

import structlog


def configure_logging(level: str = "INFO", json: Optional[bool] = None) -> None:
    """Route structlog through the standard library logger.

    Args:
        level: Minimum log level name
        json: Render JSON lines instead of the console format; defaults to
            ``LOG_FORMAT=json`` in the environment
    """
    if json is None:
        json = os.getenv("LOG_FORMAT") == "json"

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
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
            structlog.processors.JSONRenderer() if json
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
