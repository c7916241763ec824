"""Logging setup for the API process and the housekeeping scripts."""

import logging
import logging.config
import os

FORMATS = {
    "simple": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    "detailed": "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s",
}

# third-party modules that only need to report problems
QUIET_MODULES = ["httpx", "httpcore", "urllib3", "asyncio"]


def configure_logging(level: str = None, fmt: str = None) -> None:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    fmt = fmt or os.getenv("LOG_FORMAT", "simple")

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {"format": FORMATS.get(fmt, FORMATS["simple"])},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"level": level, "handlers": ["console"]},
        "loggers": {
            name: {"level": "WARNING"} for name in QUIET_MODULES
        },
    })
