from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request id, echoed to clients as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_MAX_REQUEST_ID_LENGTH = 128
_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]+$")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to the current context.

    A caller-supplied id is kept only when it is short and plain; anything
    else is replaced with a fresh uuid so headers cannot inject into logs.
    """
    if (
        not correlation_id
        or len(correlation_id) > _MAX_REQUEST_ID_LENGTH
        or not _REQUEST_ID.match(correlation_id)
    ):
        correlation_id = str(uuid.uuid4())
    correlation_id_var.set(correlation_id)
    return correlation_id


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Values under these keys are dropped entirely
_SECRET_KEYS = ("password", "secret", "token", "authorization", "private_key", "jti")
# Values under these keys are masked but stay correlatable
_PII_KEYS = ("email",)


def _mask(value: str) -> str:
    local, sep, domain = value.partition("@")
    if sep:
        return f"{local[:1]}***@{domain}"
    return value[:2] + "***" if len(value) > 4 else "***"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Strip credential material and mask personal data in every event."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        value = event_dict[key]
        if value is None or isinstance(value, bool):
            continue
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(part in lower_key for part in _PII_KEYS) and isinstance(value, str):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR
        json_output: emit one JSON object per line
        development_mode: colored console output, overrides json_output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never reach the error log or an API response
_SENSITIVE_ERROR_PATTERNS = [
    r"(?i)\b(select|insert|update|delete)\b.{0,80}",
    r"(?i)\b(from|where|join)\s+\S+",
    r"(?i)database\s+error",
    r"(?i)connection\s+.*\s+(failed|refused|timeout)",
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root)/\S+",
    r"(?i)\b[a-z]:\\\S+",
    r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+",
    r"(?i)bearer\s+\S+",
    r"eyJ[\w-]+\.[\w-]+\.[\w-]*",
    r"-----BEGIN [A-Z ]+-----[\s\S]*?(-----END [A-Z ]+-----|$)",
    r"(?i)traceback\s*\(most recent call last\)[\s\S]*",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

_MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub an error message before it is persisted or returned.

    Removes SQL fragments, filesystem paths, credential-looking values,
    bearer tokens, encoded JWTs, PEM blocks and stack traces, then caps the
    length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_ERROR_MESSAGE_LENGTH:
        result = result[: _MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result
