"""
Optional YAML configuration file.

callbridge runs from environment variables alone; a YAML file only seeds the
values the environment does not set. The file is chosen by the explicit path
argument, then CALLBRIDGE_CONFIG. ${VAR} and ${VAR:-fallback} references are
expanded before parsing; a bare $ is left alone so passwords survive intact.
"""

import os
import re
from pathlib import Path
from typing import Optional

import yaml

from callbridge.errors import ConfigurationError

CONFIG_ENV_VAR = "CALLBRIDGE_CONFIG"

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def expand_env_refs(text: str) -> str:
    """Replace ${VAR} / ${VAR:-fallback}; unset variables without a fallback become ''."""
    def _sub(match: "re.Match[str]") -> str:
        value = os.environ.get(match.group(1))
        if value:
            return value
        return match.group(2) or ""

    return _ENV_REF.sub(_sub, text)


def load_config_file(path: Optional[str] = None) -> dict:
    """
    Read the configured YAML file into a dict, or {} when none is configured.

    Relative paths are taken from the working directory.

    Raises:
        ConfigurationError: the file is configured but unreadable, not valid
            YAML, or its top level is not a mapping
    """
    path = path or os.getenv(CONFIG_ENV_VAR)
    if not path:
        return {}

    config_file = Path(path).expanduser().resolve()
    try:
        text = config_file.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(
            [CONFIG_ENV_VAR], f"Configuration file not readable at {config_file}: {e.strerror or e}"
        ) from e

    try:
        data = yaml.safe_load(expand_env_refs(text))
    except yaml.YAMLError as e:
        raise ConfigurationError([CONFIG_ENV_VAR], f"Invalid YAML in {config_file}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError([CONFIG_ENV_VAR], f"{config_file} must contain a mapping of sections")
    return data
