"""Logging configuration for postal-sync."""

from __future__ import annotations

import logging
import os


def _resolve_level(level_name: str) -> int:
    return getattr(logging, level_name.upper(), logging.INFO)


def _build_formatter() -> logging.Formatter:
    pattern = "%(asctime)s %(levelname)s %(name)s run_id=%(run_id)s %(message)s"
    return logging.Formatter(pattern, defaults={"run_id": "-"})


def configure_logging(level_name: str | None = None) -> None:
    """Configure root logging from POSTAL_SYNC_LOG_LEVEL."""
    level = _resolve_level(level_name or os.getenv("POSTAL_SYNC_LOG_LEVEL", "INFO"))
    formatter = _build_formatter()
    root_logger = logging.getLogger()

    if root_logger.handlers:
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)
            handler.setFormatter(formatter)
    else:
        logging.basicConfig(level=level)
        for handler in logging.getLogger().handlers:
            handler.setFormatter(formatter)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
