"""
Configuration package for callbridge.

This package contains:
- models: pydantic models for every configuration section
- loaders: YAML file loading and parsing
- security: credential injection (environment only)
- defaults: environment variable overrides

load_config() builds the AppConfig once at startup; validate_config() checks it
exhaustively so a deployment learns about every missing key in one go.
"""

import re
from typing import List, Optional, Tuple

from pydantic import ValidationError

from callbridge.config.defaults import (
    apply_archive_defaults,
    apply_database_defaults,
    apply_logging_defaults,
    apply_media_defaults,
    apply_monitor_defaults,
    apply_onex_defaults,
    apply_polling_defaults,
    apply_server_defaults,
)
from callbridge.config.loaders import load_config_file
from callbridge.config.models import (
    AppConfig,
    ArchiveConfig,
    DatabaseConfig,
    LoggingConfig,
    MediaConfig,
    MonitorConfig,
    OnexConfig,
    PollingConfig,
    ServerConfig,
)
from callbridge.config.security import inject_archive_credentials
from callbridge.errors import ConfigurationError

__all__ = [
    'AppConfig',
    'ArchiveConfig',
    'DatabaseConfig',
    'LoggingConfig',
    'MediaConfig',
    'MonitorConfig',
    'OnexConfig',
    'PollingConfig',
    'ServerConfig',
    'load_config',
    'require_valid',
    'validate_config',
]

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")

# (section, field, environment variable) for every value the service cannot start without
_REQUIRED = [
    ('onex', 'scheme', 'ONEX_SCHEME'),
    ('onex', 'port', 'ONEX_PORT'),
    ('onex', 'api_path', 'ONEX_API_PATH'),
    ('polling', 'interval_ms', 'UCID_POLL_INTERVAL_MS'),
    ('polling', 'max_attempts', 'UCID_POLL_MAX'),
    ('archive', 'scheme', 'ACR_SCHEME'),
    ('archive', 'host', 'ACR_HOST'),
    ('archive', 'port', 'ACR_PORT'),
    ('archive', 'path', 'ACR_PATH'),
    ('archive', 'username', 'ACR_USER'),
    ('archive', 'password', 'ACR_PASS'),
    ('media', 'root', 'MEDIA_ROOT'),
    ('media', 'ffmpeg_bin', 'FFMPEG_BIN'),
    ('database', 'call_table', 'CALL_TABLE_NAME'),
    ('database', 'action_table', 'ACTION_TABLE_NAME'),
    ('database', 'device_map_table', 'DEVICE_MAP_TABLE_NAME'),
    ('database', 'recording_table', 'ACR_TABLE_NAME'),
]


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from an optional YAML file plus environment variables.

    Args:
        path: YAML file (absolute or relative to the working directory). Falls back to
              CALLBRIDGE_CONFIG; when neither is set only the environment is used.

    Returns:
        AppConfig instance (not yet validated for completeness)

    Raises:
        ConfigurationError: If the file cannot be read or a value cannot be
            coerced to its declared type
    """
    config_data = load_config_file(path)

    inject_archive_credentials(config_data)

    apply_onex_defaults(config_data)
    apply_polling_defaults(config_data)
    apply_monitor_defaults(config_data)
    apply_archive_defaults(config_data)
    apply_media_defaults(config_data)
    apply_database_defaults(config_data)
    apply_server_defaults(config_data)
    apply_logging_defaults(config_data)

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        invalid = [".".join(str(p) for p in err.get("loc", ())) for err in e.errors()]
        raise ConfigurationError(invalid, f"Invalid configuration values: {', '.join(invalid)}") from e


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Validate configuration before any component is wired.

    Returns:
        (errors, warnings): errors name the environment variable of every
        missing or invalid required value; warnings are non-blocking.
    """
    errors: List[str] = []
    warnings: List[str] = []

    for section, field, env_name in _REQUIRED:
        value = getattr(getattr(config, section), field)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(env_name)

    if config.polling.interval_ms is not None and config.polling.interval_ms < 0:
        errors.append('UCID_POLL_INTERVAL_MS')
    if config.polling.max_attempts is not None and config.polling.max_attempts <= 0:
        errors.append('UCID_POLL_MAX')

    for field, env_name in (
        ('call_table', 'CALL_TABLE_NAME'),
        ('action_table', 'ACTION_TABLE_NAME'),
        ('device_map_table', 'DEVICE_MAP_TABLE_NAME'),
        ('recording_table', 'ACR_TABLE_NAME'),
    ):
        value = getattr(config.database, field)
        if value and not _IDENTIFIER_RE.match(value) and env_name not in errors:
            errors.append(env_name)

    if bool(config.server.ssl_cert_path) != bool(config.server.ssl_key_path):
        errors.append('SSL_CERT_PATH' if not config.server.ssl_cert_path else 'SSL_KEY_PATH')

    if not config.monitor.base_url:
        warnings.append("JAVA_UCID_BASEURL is not set; UCID will rely on one-X notifications only")
    if 'timeout_ms' not in config.monitor.model_fields_set:
        warnings.append(f"UCID_MONITOR_TIMEOUT_MS not set; using default {config.monitor.timeout_ms}ms")
    if config.media.cache_ttl_hours <= 0:
        warnings.append("CACHE_TTL_HOURS <= 0; every cached recording is evicted on the next sweep")

    return errors, warnings


def require_valid(config: AppConfig) -> List[str]:
    """Raise ConfigurationError listing every problem; return warnings otherwise."""
    errors, warnings = validate_config(config)
    if errors:
        raise ConfigurationError(errors)
    return warnings
