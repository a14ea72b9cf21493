import logging
import os
from logging.config import dictConfig
from typing import Optional

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Route every logger through one stderr handler.

    The root level comes from ``level`` or ``LEARNER_LOG_LEVEL``. SQL
    statements are echoed only with ``LEARNER_DEBUG_SQL=1``; telemetry lines
    are silenced with ``LEARNER_TELEMETRY_LOG=0``.
    """
    root_level = (level or os.getenv("LEARNER_LOG_LEVEL", "INFO")).upper()
    sql_level = "INFO" if os.getenv("LEARNER_DEBUG_SQL", "0") == "1" else "WARNING"
    telemetry_level = "WARNING" if os.getenv("LEARNER_TELEMETRY_LOG", "1") == "0" else root_level

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": DEFAULT_LOG_FORMAT}},
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "loggers": {
                "sqlalchemy.engine": {"level": sql_level},
                "learner_engine.telemetry": {"level": telemetry_level},
            },
            "root": {
                "handlers": ["default"],
                "level": root_level,
            },
        }
    )
    logging.getLogger(__name__).debug("Logging configured at %s", root_level)
