from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for per-request tracing
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_REDACT_KEYS = (
    "password",
    "secret",
    "token",
    "api_key",
    "authorization",
    "code_verifier",
    "cookie",
    "email",
)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask raw credentials and PII that end up in log fields."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if not any(marker in lower_key for marker in _REDACT_KEYS):
            continue
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 4:
            # Keep first/last 2 chars for debugging
            event_dict[key] = value[:2] + "***" + value[-2:]
        elif isinstance(value, str):
            event_dict[key] = "***"
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Anything shaped like one of our credentials, or a DSN with a password
_CREDENTIAL_PATTERNS = [
    re.compile(r"\b(?:sess|oat|ort|oac)_[A-Za-z0-9_\-]{8,}"),
    re.compile(r"\b[a-z0-9]{2,16}_[A-Za-z0-9_\-]{6}_[A-Za-z0-9_\-]{16,}"),
    re.compile(r"(?i)postgres(?:ql)?://[^\s]+"),
    re.compile(r"(?i)(password|secret|token|api.?key)\s*[:=]\s*[^\s]+"),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip credential-shaped substrings from a message bound for a client."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _CREDENTIAL_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."
    return result
