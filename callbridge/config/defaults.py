"""
Environment variable overrides for configuration.

The deployment contract uses flat environment variable names (ONEX_SCHEME,
ACR_HOST, ...). Each apply_* function maps one YAML section onto its variables.
Precedence: non-empty environment variable > YAML value > model default.
"""

import os
from typing import Any, Dict, Iterable, Tuple

_TRUE_VALUES = ("true", "1", "yes", "on")


def _bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _apply(config_data: Dict[str, Any], section: str, mapping: Iterable[Tuple[str, str]]) -> None:
    """Overlay environment variables onto config_data[section]."""
    block = config_data.get(section)
    if not isinstance(block, dict):
        block = {}
    for key, env_name in mapping:
        value = os.getenv(env_name)
        if value is not None and value.strip() != "":
            # type coercion is left to pydantic so bad values surface as config errors
            block[key] = value.strip()
    config_data[section] = block


def apply_onex_defaults(config_data: Dict[str, Any]) -> None:
    """
    Environment variables:
    - ONEX_SCHEME, ONEX_PORT, ONEX_API_PATH (required)
    - CALL_PREFIX (optional dial prefix)
    """
    _apply(config_data, 'onex', [
        ('scheme', 'ONEX_SCHEME'),
        ('port', 'ONEX_PORT'),
        ('api_path', 'ONEX_API_PATH'),
        ('call_prefix', 'CALL_PREFIX'),
    ])


def apply_polling_defaults(config_data: Dict[str, Any]) -> None:
    _apply(config_data, 'polling', [
        ('interval_ms', 'UCID_POLL_INTERVAL_MS'),
        ('max_attempts', 'UCID_POLL_MAX'),
    ])


def apply_monitor_defaults(config_data: Dict[str, Any]) -> None:
    _apply(config_data, 'monitor', [
        ('base_url', 'JAVA_UCID_BASEURL'),
        ('timeout_ms', 'UCID_MONITOR_TIMEOUT_MS'),
    ])


def apply_archive_defaults(config_data: Dict[str, Any]) -> None:
    _apply(config_data, 'archive', [
        ('scheme', 'ACR_SCHEME'),
        ('host', 'ACR_HOST'),
        ('port', 'ACR_PORT'),
        ('path', 'ACR_PATH'),
    ])


def apply_media_defaults(config_data: Dict[str, Any]) -> None:
    _apply(config_data, 'media', [
        ('root', 'MEDIA_ROOT'),
        ('ffmpeg_bin', 'FFMPEG_BIN'),
        ('cache_ttl_hours', 'CACHE_TTL_HOURS'),
    ])
    use_local = os.getenv('USE_LOCAL_DEFAULT')
    if use_local is not None and use_local.strip():
        config_data['media']['use_local_default'] = _bool(use_local)


def apply_database_defaults(config_data: Dict[str, Any]) -> None:
    _apply(config_data, 'database', [
        ('path', 'DB_PATH'),
        ('call_table', 'CALL_TABLE_NAME'),
        ('action_table', 'ACTION_TABLE_NAME'),
        ('device_map_table', 'DEVICE_MAP_TABLE_NAME'),
        ('recording_table', 'ACR_TABLE_NAME'),
    ])


def apply_server_defaults(config_data: Dict[str, Any]) -> None:
    _apply(config_data, 'server', [
        ('host', 'HOST'),
        ('port', 'PORT'),
        ('ssl_cert_path', 'SSL_CERT_PATH'),
        ('ssl_key_path', 'SSL_KEY_PATH'),
    ])


def apply_logging_defaults(config_data: Dict[str, Any]) -> None:
    """
    Environment variables:
    - LOG_LEVEL: debug|info|warning|error|critical
    - LOG_DIR: directory for daily rotated files
    - LOG_MAX_FILES: number of daily files kept ("14" or "14d")
    - LOG_TO_CONSOLE: true|false
    - LOG_FORMAT: json|console
    """
    _apply(config_data, 'logging', [
        ('level', 'LOG_LEVEL'),
        ('dir', 'LOG_DIR'),
        ('format', 'LOG_FORMAT'),
    ])
    block = config_data['logging']
    max_files = os.getenv('LOG_MAX_FILES')
    if max_files and max_files.strip():
        block['max_files'] = max_files.strip().rstrip('dD')
    to_console = os.getenv('LOG_TO_CONSOLE')
    if to_console is not None and to_console.strip():
        block['to_console'] = _bool(to_console)
