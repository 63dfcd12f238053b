"""
Structured logging for the delivery service.

structlog builds each event and hands its fields to the standard library as
``extra``; python-json-logger then writes one flat JSON object per line with
``timestamp``, ``level``, ``logger`` and ``event`` next to the event fields.
Request scope (request id, method, path, test-mode flag) travels in structlog
contextvars.
"""
import logging
import sys
from typing import Any, Optional, TextIO

import structlog
from pythonjsonlogger import jsonlogger

from paysurity_delivery.config import get_settings

# Keys the stdlib refuses to accept in ``extra``
RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

TRUTHY_HEADER_VALUES = ("1", "true", "yes")


def add_delivery_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Stamp every event with the service name and delivery context.

    Events that name a provider only by ``provider_type`` or ``provider_name``
    also get a ``provider`` key, so log queries can filter on a single field.
    Events logged outside a request carry ``test_mode=False``.
    """
    settings = get_settings()
    event_dict.setdefault("app_name", settings.app_name)
    event_dict.setdefault("app_env", settings.app_env)

    if "provider" not in event_dict:
        provider = event_dict.get("provider_type") or event_dict.get("provider_name")
        if provider is not None:
            event_dict["provider"] = provider

    event_dict.setdefault("test_mode", False)
    return event_dict


def rename_record_attributes(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Prefix event keys that would clash with LogRecord attributes."""
    for key in RECORD_ATTRIBUTES.intersection(event_dict):
        event_dict[f"field_{key}"] = event_dict.pop(key)
    return event_dict


def is_test_mode(header_value: Optional[str]) -> bool:
    return (header_value or "").strip().lower() in TRUTHY_HEADER_VALUES


def bind_request_context(
    request_id: str, method: str, path: str, test_mode: bool = False
) -> None:
    """Start a fresh log context for one HTTP request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=method,
        path=path,
        test_mode=test_mode,
    )


def build_json_formatter() -> jsonlogger.JsonFormatter:
    return jsonlogger.JsonFormatter(
        "%(levelname)s %(name)s %(message)s",
        rename_fields={"levelname": "level", "name": "logger", "message": "event"},
        timestamp=True,
    )


def setup_logging(stream: Optional[TextIO] = None) -> None:
    """
    Configure structlog and the root JSON handler.

    Args:
        stream: Where log lines go; standard output by default
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_delivery_context,
            rename_record_attributes,
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(stream or sys.stdout)
    json_handler.setFormatter(build_json_formatter())
    root_logger.addHandler(json_handler)

    # DoorDash calls go through httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
    )
