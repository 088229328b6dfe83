"""Conductor client logging configuration.

Logs go to a rotating file under the client state directory
(default: `~/.conductor/logs/conductor.log`) because stdout and stdin belong
to the attached terminal session.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from conductor.paths import LOG_DIR

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logging(level: Optional[str] = None, log_dir: Optional[Path] = None) -> Path:
    """Configure conductor logging.

    Args:
        level: Optional override for `CONDUCTOR_LOG_LEVEL`.
        log_dir: Directory for the log file (defaults to the state directory).

    Returns:
        Path of the log file in use.
    """
    if level:
        os.environ["CONDUCTOR_LOG_LEVEL"] = level
    resolved_level = os.getenv("CONDUCTOR_LOG_LEVEL", "INFO").upper()

    directory = log_dir or LOG_DIR
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / "conductor.log"

    root = logging.getLogger("conductor")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handler = RotatingFileHandler(log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, resolved_level, logging.INFO))
    root.propagate = False
    return log_path
