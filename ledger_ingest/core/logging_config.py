"""
Application-wide logging configuration helpers.

This module centralizes logging setup so that the ingestion pipeline, the
export archiver and the API share the same configuration and emit
human-readable log lines to stdout.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional


_is_configured = False

# Third-party loggers that are chatty at INFO while streaming objects.
_NOISY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3")


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root and application loggers if they have not been configured yet.

    Args:
        level: Optional log level override (e.g., "DEBUG", "INFO").
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                }
            },
            "root": {
                "handlers": ["console"],
                "level": log_level,
            },
        }
    )

    logging.getLogger("ledger_ingest").setLevel(log_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _is_configured = True
