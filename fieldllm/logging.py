from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variable for the per-request correlation ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


# Credential shapes that must never leave the process. Order matters: the
# vendor-specific prefixes are masked before the generic ``sk-`` form.
_SECRET_PATTERNS = [
    (re.compile(r"sk-ant-[a-zA-Z0-9_-]+"), "sk-ant-***"),
    (re.compile(r"sk-proj-[a-zA-Z0-9_-]+"), "sk-proj-***"),
    (re.compile(r"sk-(?!ant-\*\*\*|proj-\*\*\*)[a-zA-Z0-9_-]{8,}"), "sk-***"),
    (re.compile(r"(?i)bearer\s+[a-zA-Z0-9_\-\.=]+"), "Bearer ***"),
    (
        re.compile(r"(?i)\b(api[_-]?key|secret|password|token)\s*[:=]\s*[^\s,;&]+"),
        r"\1=***",
    ),
]


def redact_secrets(text: str) -> str:
    """Mask API keys and bearer tokens inside free text."""
    if not text or not isinstance(text, str):
        return text
    result = text
    for pattern, replacement in _SECRET_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact PII from log entries."""
    pii_keys = {"password", "secret", "token", "api_key", "authorization", "email", "ssn"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Preserve first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _scrub_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credential patterns in every string value."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = redact_secrets(value)
        elif isinstance(value, (dict, list)):
            event_dict[key] = _scrub_nested(value)
    return event_dict


def _scrub_nested(value: Any, depth: int = 0) -> Any:
    if depth > 10:
        return value
    if isinstance(value, str):
        return redact_secrets(value)
    if isinstance(value, dict):
        return {k: _scrub_nested(v, depth + 1) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub_nested(v, depth + 1) for v in value]
    return value


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
        _redact_pii,
        _scrub_secrets,
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


def log_workflow_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Log the per-step outcome of one workflow run."""
    log = logger or get_logger("workflow")
    log.info("workflow_trace", trace=trace)


# Keys that should be redacted in response data
_SENSITIVE_RESPONSE_KEYS = frozenset({
    'password', 'secret', 'token', 'api_key', 'apikey', 'api-key',
    'authorization', 'credentials', 'private_key', 'privatekey',
    'ssn', 'social_security', 'credit_card', 'creditcard', 'cvv',
    'secret_key', 'secretkey', 'access_key', 'accesskey',
})


def sanitize_error_message(error: str, *, max_length: int = 500) -> str:
    """Mask credentials in an error message and bound its length.

    Args:
        error: Original error message
        max_length: Longest message returned to callers

    Returns:
        Message safe for logs and API responses
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = redact_secrets(error)
    if len(result) > max_length:
        result = result[: max_length - 3] + "..."
    return result


def sanitize_response_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Redact sensitive keys and credential-shaped strings in nested data.

    Args:
        data: Data to sanitize (dict, list, or primitive)
        depth: Current recursion depth
        max_depth: Maximum recursion depth

    Returns:
        Sanitized data with sensitive values redacted
    """
    if depth > max_depth:
        return "[max depth exceeded]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            lower_key = str(key).lower().replace('-', '_').replace(' ', '_')
            if any(sensitive in lower_key for sensitive in _SENSITIVE_RESPONSE_KEYS):
                if isinstance(value, bool):
                    result[key] = False
                elif isinstance(value, (int, float)):
                    result[key] = 0
                else:
                    result[key] = "[REDACTED]"
            else:
                result[key] = sanitize_response_data(value, depth=depth + 1, max_depth=max_depth)
        return result
    elif isinstance(data, list):
        return [sanitize_response_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    elif isinstance(data, str):
        return redact_secrets(data)
    else:
        return data
