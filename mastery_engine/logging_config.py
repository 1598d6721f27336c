"""Logging setup: one stream handler on the root logger, configured via ``dictConfig``."""
from __future__ import annotations

import os
from logging.config import dictConfig
from typing import Optional

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Install a single stream handler on the root logger."""
    level = (level or os.getenv("MASTERY_LOG_LEVEL", "INFO")).upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": DEFAULT_LOG_FORMAT,
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {
                "handlers": ["default"],
                "level": level,
            },
        }
    )


__all__ = ["DEFAULT_LOG_FORMAT", "configure_logging"]
