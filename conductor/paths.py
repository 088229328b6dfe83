from __future__ import annotations

from pathlib import Path

STATE_DIR = (Path("~/.conductor")).expanduser()
CONFIG_PATH = STATE_DIR / "conductor.yml"
LOG_DIR = STATE_DIR / "logs"
