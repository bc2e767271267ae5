"""Application logging helpers (internal).

One stream handler per named logger, level taken from
``app.config.log_level_name()``. The connection layer logs from worker and
health-check threads alike, so logger setup is serialized.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict

from app import config as app_config

_LOCK = threading.Lock()
_CONFIGURED: Dict[str, logging.Logger] = {}
_FORMAT = "[app] %(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"


def get_logger(name: str = "app") -> logging.Logger:
    logger = _CONFIGURED.get(name)
    if logger is not None:
        return logger
    with _LOCK:
        logger = _CONFIGURED.get(name)
        if logger is not None:
            return logger
        logger = logging.getLogger(name)
        level = getattr(logging, app_config.log_level_name(), logging.INFO)
        logger.setLevel(level)
        if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(_FORMAT))
            logger.addHandler(handler)
        logger.propagate = False
        _CONFIGURED[name] = logger
        return logger


__all__ = ["get_logger"]
