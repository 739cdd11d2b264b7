"""
Logging setup for the import service.

Modules log through ``logging.getLogger(__name__)``. ``configure_logging``
sends everything to one stdout handler and lets the import pipeline
(``app.domain.imports``) run at its own level, so row-level debug output can
be switched on without turning up the whole service.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

IMPORT_PIPELINE_LOGGER = "app.domain.imports"

_configured_level: Optional[str] = None


def configure_logging(
    level: Optional[str] = None,
    import_level: Optional[str] = None,
    force: bool = False,
) -> None:
    """
    Configure service logging once per process.

    Args:
        level: Root log level (default INFO)
        import_level: Level for the import pipeline loggers; defaults to ``level``
        force: Re-apply the configuration even if it was already applied
    """
    global _configured_level

    log_level = (level or "INFO").upper()
    if _configured_level is not None and not force:
        return

    pipeline_level = (import_level or log_level).upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "standard",
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
            "loggers": {
                "app": {"level": log_level},
                IMPORT_PIPELINE_LOGGER: {"level": pipeline_level},
                "sqlalchemy.engine": {"level": "WARNING"},
                "multipart": {"level": "WARNING"},
            },
        }
    )

    _configured_level = log_level
    logging.getLogger(__name__).debug(
        f"Logging configured (root={log_level}, imports={pipeline_level})"
    )
