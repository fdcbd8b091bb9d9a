"""Logging setup shared by every GE Tracker module."""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

_CONFIGURED = False

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging() -> None:
    """Attach stdout (and optionally rotating file) handlers to the root logger once."""

    global _CONFIGURED
    if _CONFIGURED:
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file = os.getenv("LOG_FILE")
    max_bytes = int(os.getenv("LOG_MAX_BYTES", str(2 * 1024 * 1024)))
    backups = int(os.getenv("LOG_BACKUPS", "3"))

    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(_FORMAT)

    if not root.handlers:
        stream = logging.StreamHandler(sys.stdout)
        stream.setLevel(level)
        stream.setFormatter(formatter)
        root.addHandler(stream)

        if log_file:
            try:
                Path(log_file).parent.mkdir(parents=True, exist_ok=True)
                handler = RotatingFileHandler(
                    log_file, maxBytes=max_bytes, backupCount=backups
                )
                handler.setLevel(level)
                handler.setFormatter(formatter)
                root.addHandler(handler)
            except OSError as exc:
                root.warning("Failed to initialise file logging at %s: %s", log_file, exc)

    _CONFIGURED = True


def get_logger(name: str | None = None) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
