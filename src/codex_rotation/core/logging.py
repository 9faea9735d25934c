"""Structured logging setup with credential redaction.

Every module logs through ``structlog.get_logger(__name__)``. The redaction
processor installed here masks token-bearing fields so refresh material never
reaches a log sink in clear text.
"""

import logging
import re
from typing import Any

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from codex_rotation.config.settings import RotationSettings


REDACTED = "[REDACTED]"

# Compared after lowercasing and stripping "_" / "-"
SENSITIVE_KEYS = frozenset(
    {
        "access",
        "accesstoken",
        "apikey",
        "authorization",
        "cookie",
        "idtoken",
        "password",
        "refresh",
        "refreshtoken",
        "secret",
        "token",
        "xapikey",
    }
)

JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")


def is_sensitive_key(key: str) -> bool:
    """Check if a field name carries credential material."""
    normalized = key.lower().replace("_", "").replace("-", "")
    return normalized in SENSITIVE_KEYS


def redact_value(value: Any) -> Any:
    """Recursively mask sensitive fields and JWT-looking strings.

    Args:
        value: Arbitrary log value (dict, list, str, ...)

    Returns:
        A redacted copy; the input is not modified
    """
    if isinstance(value, dict):
        return {
            k: (
                REDACTED
                if isinstance(k, str) and is_sensitive_key(k)
                else redact_value(v)
            )
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [redact_value(item) for item in value]
    if isinstance(value, str):
        return JWT_PATTERN.sub(REDACTED, value)
    return value


def redact_sensitive_data(
    _logger: WrappedLogger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """structlog processor masking credentials in the event dict."""
    return {
        key: REDACTED if is_sensitive_key(key) else redact_value(value)
        for key, value in event_dict.items()
    }


def setup_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Render JSON lines instead of the console format
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_sensitive_data,
    ]
    if json_logs:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping()[level.upper()]
        ),
        cache_logger_on_first_use=False,
    )


def setup_logging_from_settings(settings: RotationSettings) -> None:
    """Configure logging from rotation settings."""
    setup_logging(level=settings.log_level, json_logs=settings.log_json)
