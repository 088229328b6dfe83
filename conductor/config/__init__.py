"""Client configuration management.

Configuration is loaded explicitly and handed to `ClientContext`:
    from conductor.config import load_settings
    settings = load_settings()
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from conductor.config.loader import load_client_config
from conductor.config.schema import ClientConfig, ReconnectConfig
from conductor.paths import CONFIG_PATH

__all__ = ["ClientConfig", "ReconnectConfig", "load_settings", "resolve_config_path"]


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Resolve the config file path (explicit > CONDUCTOR_CONFIG > default)."""
    if path is not None:
        return path.expanduser()
    env_path = os.getenv("CONDUCTOR_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return CONFIG_PATH


def load_settings(path: Optional[Path] = None, *, env_file: Optional[Path] = None) -> ClientConfig:
    """Load `.env` overrides, then the YAML config.

    Environment values are visible to `${VAR}` expansion inside the YAML file.
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()
    settings = load_client_config(resolve_config_path(path))
    env_level = os.getenv("CONDUCTOR_LOG_LEVEL")
    if env_level:
        settings = ClientConfig.model_validate({**settings.model_dump(), "log_level": env_level})
    return settings
