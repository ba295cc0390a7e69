"""Logging configuration."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from portfolio_bot.core.config import LoggingConfig, logging_config


def setup_logging(config: Optional[LoggingConfig] = None, log_to_file: bool = True):
    """Configure structured JSON logging to stdout and, optionally, a log file."""
    config = config or logging_config
    level = getattr(logging, config.log_level.upper())

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

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
            structlog.processors.JSONRenderer(default=str),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if not log_to_file:
        return

    log_path = Path(config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(level)
    logging.getLogger().addHandler(file_handler)
