from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request-scoped id, bound by the HTTP middleware from X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_REDACTED_KEYS = ("password", "secret", "token", "authorization", "hash")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
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
    """Mask values logged under credential-looking keys."""
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        if any(marker in key.lower() for marker in _REDACTED_KEYS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = f"{value[:2]}***{value[-2:]}"
            else:
                event_dict[key] = "***"
    return event_dict


def configure_logging(log_level: str = "INFO", development_mode: bool = False) -> None:
    """JSON lines by default; colored console output in development mode."""
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if development_mode
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_correlation_id,
            _redact_secrets,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
