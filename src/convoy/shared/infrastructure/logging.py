"""
Structured logging configuration using structlog.

Provides consistent, structured logging across all modules, with
credential redaction applied to every event before rendering.
"""

import logging
import re
import sys
from typing import Any

import structlog

from convoy.shared.infrastructure.config import settings

# Patterns to redact
_REDACTION_PATTERNS = [
    (
        re.compile(r"(api[_-]?key|token|password|passwd|secret)(['\"]?\s*[:=]\s*['\"]?)([^'\"\s]+)", re.IGNORECASE),
        r"\1\2[REDACTED]",
    ),
    (re.compile(r"Bearer\s+\S+", re.IGNORECASE), "Bearer [TOKEN_REDACTED]"),
    (re.compile(r"(--password(?:-stdin)?[ =])(\S+)", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(https?://)[^/\s:@]+:[^/\s@]+@"), r"\1[CREDENTIALS_REDACTED]@"),
]


def redact_string(text: str) -> str:
    """Redact credential-looking patterns from a string."""
    for pattern, replacement in _REDACTION_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def privacy_redactor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Redact credentials from log events.

    Redacts:
    - key=value / key: value pairs for api keys, tokens, passwords, secrets
    - Bearer tokens
    - --password flags of registry logins
    - user:password@ in URLs

    Secret values resolved by the stage runner never reach the logger; this
    processor catches credentials embedded in command lines or tool output.
    """
    if not getattr(settings, "log_redaction_enabled", True):
        return event_dict

    def redact_value(value: Any) -> Any:
        if isinstance(value, str):
            return redact_string(value)
        if isinstance(value, dict):
            return {k: redact_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [redact_value(v) for v in value]
        return value

    return {k: redact_value(v) for k, v in event_dict.items()}


def configure_logging(stream: Any = sys.stderr) -> None:
    """
    Configure structlog for the application.

    Sets up:
    - JSON output for production
    - Pretty console output for development
    - Log level from settings
    - run_id binding through contextvars
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        privacy_redactor,
    ]

    if settings.is_development:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=stream.isatty() if hasattr(stream, "isatty") else False),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=getattr(logging, settings.log_level.upper()),
        force=True,  # Force reconfiguration in case it was already set
    )


def get_logger(name: str) -> Any:
    """
    Get a structured logger instance.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("stage_started", stage_id="build")
    """
    return structlog.get_logger(name)
