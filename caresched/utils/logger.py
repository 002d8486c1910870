"""Process-wide logging setup for the scheduling service."""

from __future__ import annotations

import logging
import sys
from threading import Lock
from typing import Optional

from caresched.utils.config import get_settings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty third-party loggers capped at WARNING regardless of the app level.
QUIET_LOGGERS = ("httpx", "urllib3")

_configured = False
_configure_lock = Lock()


def configure_logging(level: Optional[str] = None) -> None:
    """Install the stdout handler once; later calls are no-ops."""
    global _configured
    with _configure_lock:
        if _configured:
            return

        resolved_level = (level or get_settings().log_level).upper()
        logging.basicConfig(level=resolved_level, format=LOG_FORMAT, stream=sys.stdout)
        # pandas/numpy warnings go through the same handler as service logs.
        logging.captureWarnings(True)
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
        _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
