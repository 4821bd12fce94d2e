from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Mapping, Optional

import structlog

# Request id of the HTTP request being served; echoed in envelopes and logs
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Any key containing one of these fragments is treated as a credential
_SENSITIVE_FRAGMENTS = ("password", "secret", "token", "api_key", "authorization", "code", "cookie")
# Identifiers that contain a PII substring but are safe (and useful) to log
_SAFE_KEYS = frozenset({"token_id", "token_type", "error_code", "status_code"})

_TRUTHY = {"1", "true", "yes", "on"}
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    if lowered in _SAFE_KEYS:
        return False
    return any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS)


def mask_value(value: str) -> str:
    """Keep the first and last two characters of long credentials, hide the rest."""
    if len(value) > 4:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and _is_sensitive(key):
            event_dict[key] = mask_value(value)
    return event_dict


def _renderer(console: bool) -> List[Any]:
    if console:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(env: Optional[Mapping[str, str]] = None) -> None:
    """Configure structlog from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.

    Runs once at import with ``os.environ``.
    """
    env = os.environ if env is None else env
    console = (
        env.get("LOG_DEV_MODE", "false").lower() in _TRUTHY
        or env.get("LOG_JSON", "true").lower() not in _TRUTHY
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            _redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(console),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(env.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def sanitize_error_message(error: str, *, limit: int = 200) -> str:
    """Trim an error string before it is placed in a client-facing response."""

    if not error or not isinstance(error, str):
        return "An error occurred"
    if len(error) > limit:
        return error[: limit - 3] + "..."
    return error
