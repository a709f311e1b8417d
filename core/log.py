"""Shared logger factory for the sync layer."""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from core.settings import LOG_LEVEL, LOG_PATH


_ROOT_NAME = "pastillero"


def _ensure_root() -> logging.Logger:
    logger = logging.getLogger(_ROOT_NAME)
    if not logger.handlers:
        LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return ``pastillero.<name>``, making sure the file handler is attached."""

    _ensure_root()
    return logging.getLogger(f"{_ROOT_NAME}.{name}")


__all__ = ["get_logger"]
