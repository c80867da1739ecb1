"""
Security-critical configuration injection.

SECURITY POLICY:
- Archive credentials MUST NEVER be in YAML files
- They come from environment variables only; YAML values are overwritten
"""

import os
from typing import Any, Dict


def _is_nonempty_string(val: Any) -> bool:
    """Check if value is a string with non-whitespace content."""
    return isinstance(val, str) and val.strip() != ""


def inject_archive_credentials(config_data: Dict[str, Any]) -> None:
    """
    Inject archive credentials from environment variables ONLY.

    Environment variables:
    - ACR_USER (required)
    - ACR_PASS (required)

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    archive = config_data.get('archive') if isinstance(config_data.get('archive'), dict) else {}
    username = os.getenv("ACR_USER")
    password = os.getenv("ACR_PASS")
    archive['username'] = username if _is_nonempty_string(username) else None
    archive['password'] = password if _is_nonempty_string(password) else None
    config_data['archive'] = archive
