# app/core/logging.py
from __future__ import annotations

import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Dict

import structlog

from app.core.run_context import get_run_id


# -------- Processors ---------------------------------------------------------

def _stamp(_: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("ts", datetime.now(timezone.utc).isoformat(timespec="milliseconds"))
    event_dict["level"] = str(event_dict.get("level") or method_name or "info").lower()
    return event_dict


def _run_context(service_name: str):
    def _inner(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        run_id = get_run_id()
        if run_id:
            event_dict.setdefault("run_id", run_id)
        return event_dict
    return _inner


_SECRET_KEYS = frozenset({
    "authorization", "token", "access_token", "api_key", "apikey",
    "x-api-key", "password", "secret", "database_url", "dsn",
})
# Feed and API URLs sometimes carry credentials in the query string.
_URL_SECRET_RE = re.compile(r"([?&](?:api_key|apikey|token|key|sig)=)[^&\s]+", re.IGNORECASE)


def _redact(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if str(key).lower() in _SECRET_KEYS:
            event_dict[key] = "***redacted***"
        elif isinstance(value, str) and "=" in value:
            event_dict[key] = _URL_SECRET_RE.sub(r"\1***", value)
    return event_dict


# -------- Public API ---------------------------------------------------------

_logger: structlog.BoundLogger | None = None


def configure_logging(service_name: str = "ingest", *, level: int | str = logging.INFO) -> None:
    """
    One JSON-lines structlog stack on stderr for services and workers.
    Stdlib loggers (db_service) share the same stream and level.
    """
    global _logger

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr, force=True)

    structlog.configure(
        processors=[
            _stamp,
            _run_context(service_name),
            _redact,
            structlog.processors.EventRenamer("event"),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    _logger = structlog.get_logger()


def get_logger() -> structlog.BoundLogger:
    if _logger is None:
        configure_logging()
    return _logger


logger = get_logger()
