"""
structlog setup for credverify.

Every module logs a snake_case event name with keyword context:

    logger = get_logger(__name__)
    logger.info("tx_sent", signature=short_id(sig), attempt=2)

The event name is emitted as ``event_type`` next to an ISO timestamp, the level
and the module name. Keys that carry key material or session tokens are masked
before rendering, so a stray ``token=...`` never reaches the log sink.

This module imports nothing else from credverify.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

_SECRET_KEYS = frozenset(
    {
        "secret",
        "seed",
        "salt",
        "private_key",
        "secret_key",
        "token",
        "refresh_token",
        "api_key",
        "authorization",
    }
)
_MASK = "***"


def _utc_timestamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    return event_dict


def _event_type(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog's positional ``event`` becomes ``event_type``."""
    event = event_dict.pop("event", None)
    if event is not None:
        event_dict.setdefault("event_type", event)
    return event_dict


def _mask_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in _SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = _MASK
    return event_dict


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """
    (Re)configure structlog.

    Defaults come from LOG_LEVEL (INFO) and LOG_FORMAT (``json``; anything else
    renders for a terminal).
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    render_json = (fmt or os.getenv("LOG_FORMAT", "json")).strip().lower() == "json"

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _utc_timestamp,
        _mask_secrets,
        _event_type,
    ]
    if render_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        # ConsoleRenderer looks the message up under "event"
        processors.append(
            structlog.dev.ConsoleRenderer(event_key="event_type", colors=sys.stderr.isatty())
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_logging()


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger bound to ``logger=<name>``; pass ``__name__``."""
    return structlog.get_logger(name).bind(logger=name)


def short_id(value: Any, keep: int = 16) -> str:
    """Truncate an address, signature or job id for log output."""
    text = "" if value is None else str(value)
    if len(text) <= keep:
        return text
    return text[:keep] + "..."
