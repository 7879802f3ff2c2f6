from __future__ import annotations

import logging
import sys

import structlog

from healthcast.config import get_settings

# Chatty at INFO: APScheduler logs every job lookup, statsmodels every fit retry.
_QUIET_LOGGERS = ("apscheduler.scheduler", "apscheduler.executors.default", "statsmodels")


def configure_logging(level: str | None = None) -> None:
    """
    Route structlog through stdlib logging, one JSON object per line on stderr.

    stdout is left to the CLI, which prints the batch summary there.
    """
    log_level = (level or get_settings().LOG_LEVEL).upper()

    logging.basicConfig(level=log_level, format="%(message)s", stream=sys.stderr)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
