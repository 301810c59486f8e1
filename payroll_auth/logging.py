"""structlog setup shared by every payroll_auth module.

Configured once on import from ``LOG_LEVEL`` and ``LOG_JSON``. Each entry
carries the request's correlation id, and credential-bearing keys are masked
before rendering.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Exact keys masked outright
_MASKED_KEYS = {"access_token", "refresh_token", "token", "authorization"}
# Key fragments masked with a short prefix/suffix kept
_PARTIAL_MASK_MARKERS = ("password", "secret")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the client's request id when given, else generate one."""
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


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask raw tokens and credentials that slip into log context."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _MASKED_KEYS or lower_key.endswith("_token"):
            if value is not None:
                event_dict[key] = "***"
        elif any(marker in lower_key for marker in _PARTIAL_MASK_MARKERS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

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
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def token_fingerprint(token: Optional[str]) -> Optional[str]:
    """Short stable identifier for a token, safe to put in logs."""
    if not token:
        return None
    return hashlib.sha256(token.encode()).hexdigest()[:12]
