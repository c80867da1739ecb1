"""
Structured Logging Configuration

This module configures structured logging using the 'structlog' library.
It sets up processors for adding timestamps, log levels, request correlation
IDs and secret redaction, and renders logs in JSON (default) or colorized
console format. File output rotates daily under the configured log directory.
"""

import os
import logging
import sys
import contextvars
import uuid
import time
from logging.handlers import TimedRotatingFileHandler

import structlog
from structlog import dev as structlog_dev

# Context variable for the per-request correlation ID
correlation_id_var = contextvars.ContextVar('correlation_id', default=None)

SERVICE_NAME = 'callbridge'


def new_request_id():
    """Build a short request id: epoch millis plus a random suffix."""
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def get_correlation_id():
    """Get the current correlation ID."""
    return correlation_id_var.get()


def set_correlation_id(value=None):
    """Set the correlation ID for the current task and return it."""
    if value is None:
        value = new_request_id()
    correlation_id_var.set(value)
    return value


def add_correlation_id(logger, method_name, event_dict):
    """Add correlation ID to the log record."""
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict['correlation_id'] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    """Add service context to the log record."""
    event_dict['service'] = SERVICE_NAME
    component = event_dict.get('logger')
    if not component:
        component = getattr(getattr(logger, 'logger', None), 'name', None) or getattr(logger, 'name', 'unknown')
    event_dict['component'] = component
    return event_dict


SENSITIVE_KEYS = {
    'api_key', 'apikey', 'token', 'access_token', 'auth_token', 'bearer',
    'password', 'passwd', 'pwd', 'pass',
    'authorization', 'auth',
    'credential', 'credentials', 'secret', 'secrets',
}


def _redact_value(value):
    """Redact a sensitive value, keeping the first two characters of strings."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        if not value:
            return ''
        if len(value) > 4:
            return f"{value[:2]}***REDACTED***"
        return "***REDACTED***"
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    return "***REDACTED***"


def _is_sensitive(key) -> bool:
    normalized = str(key).lower().replace('_', '').replace('-', '')
    for pattern in SENSITIVE_KEYS:
        pattern_normalized = pattern.replace('_', '')
        # exact or suffix match ("acr_pass") so "passthrough" is not caught
        if normalized == pattern_normalized or normalized.endswith(pattern_normalized):
            return True
    return False


def _sanitize_dict(d):
    sanitized = {}
    for key, value in d.items():
        if _is_sensitive(key):
            sanitized[key] = _redact_value(value)
        elif isinstance(value, dict):
            sanitized[key] = _sanitize_dict(value)
        elif isinstance(value, (list, tuple)):
            sanitized[key] = [_sanitize_dict(v) if isinstance(v, dict) else v for v in value]
        else:
            sanitized[key] = value
    return sanitized


def sanitize_secrets(logger, method_name, event_dict):
    """
    Redact credentials from log events.

    Archive credentials and any password/token/authorization values are
    replaced with '***REDACTED***' while the rest of the event is preserved.
    Nested dicts (e.g. request params) are walked recursively.
    """
    return _sanitize_dict(event_dict)


def configure_logging(log_level="INFO", log_dir=None, max_files=14, to_console=True, log_format=None):
    """
    Set up structured logging for the whole process.

    Called once at startup by the entry point. Every component obtains its
    logger through get_logger() or receives one explicitly.

    Environment overrides (optional):
      - LOG_FORMAT: json|console (default: json)
      - LOG_COLOR:  0|1 (console only; default: 1)
    """
    log_format = (log_format or os.getenv("LOG_FORMAT", "json")).strip().lower()
    log_color = os.getenv("LOG_COLOR", "1").strip() not in ("0", "false", "False")

    level_upper = log_level.upper() if isinstance(log_level, str) else str(log_level)
    level_value = getattr(logging, level_upper, logging.INFO) if isinstance(log_level, str) else int(log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_service_context,
            add_correlation_id,
            sanitize_secrets,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog_dev.ConsoleRenderer(colors=log_color) if log_format == "console" else structlog.processors.JSONRenderer()

    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level_value)

    if to_console or not log_dir:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(processor_formatter)
        root_logger.addHandler(console_handler)

    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = TimedRotatingFileHandler(
                os.path.join(log_dir, f"{SERVICE_NAME}.log"),
                when="midnight",
                backupCount=max_files,
            )
            file_handler.setFormatter(processor_formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            # console fallback
            if not to_console:
                console_handler = logging.StreamHandler(sys.stdout)
                console_handler.setFormatter(processor_formatter)
                root_logger.addHandler(console_handler)
            get_logger(__name__).warning(
                "File logging disabled due to error; continuing with console only",
                error=str(e),
                log_dir=log_dir,
            )

    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)


def get_logger(name: str):
    """Get a structlog logger."""
    return structlog.get_logger(name)
