"""Utility functions for the conductor client."""

import os
import re
import secrets
import string

_ID_ALPHABET = string.ascii_lowercase + string.digits


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values.

    Args:
        config: Configuration object (dict, list, str, or primitive)

    Returns:
        Configuration with all ${VAR} patterns replaced
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            env_var = match.group(1)
            return os.getenv(env_var, match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def random_id(length: int = 8) -> str:
    """Return a short random lowercase alphanumeric identifier."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def strip_trailing_slash(url: str) -> str:
    """Normalize a base URL by dropping trailing slashes."""
    return url.strip().rstrip("/")
