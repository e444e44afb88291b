from __future__ import annotations

import logging
import logging.config
import os
from typing import Any, Dict, Optional


def build_logging_config(level: Optional[str] = None) -> Dict[str, Any]:
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "chetana": {"handlers": ["console"], "level": level, "propagate": False},
            "uvicorn": {"handlers": ["console"], "level": level, "propagate": False},
        },
        "root": {"handlers": ["console"], "level": "WARNING"},
    }


def configure_logging(level: Optional[str] = None) -> None:
    logging.config.dictConfig(build_logging_config(level))
