from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request tracking id, echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for this context, minting a uuid4 when none came in."""
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


# Substrings of field names whose values are masked
_MASKED_FIELD_PARTS = ("password", "secret", "token", "authorization", "email", "code")
_UNMASKED_FIELDS = frozenset({"error_code", "status_code", "backup_code_count"})


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like values, keeping the first and last two characters."""
    for key, value in list(event_dict.items()):
        name = key.lower()
        if name in _UNMASKED_FIELDS or not isinstance(value, str) or len(value) <= 4:
            continue
        if any(part in name for part in _MASKED_FIELD_PARTS):
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _configure_structlog(log_level: str, json_output: bool) -> None:
    """JSON lines by default; ``LOG_JSON=false`` switches to the console renderer."""
    processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_security_event(
    action: str,
    *,
    user_id: str,
    status: str,
    ip_address: Optional[str] = None,
    logger: Optional[Any] = None,
) -> None:
    """Mirror an audit log row into the structured log stream."""
    log = logger or get_logger("security")
    log.info(
        "security_audit",
        action=action,
        user_id=user_id,
        status=status,
        ip_address=ip_address,
    )


# Store errors can carry SQL, DSNs and file paths from the state snapshot
_ERROR_SCRUBBERS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"(?:/[\w.\-]+){2,}"),
    re.compile(r"(?i)(password|secret|token)\s*[:=]\s*\S+"),
]
_MAX_ERROR_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub an exception message before it is kept in a failure record."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for scrubber in _ERROR_SCRUBBERS:
        error = scrubber.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error
