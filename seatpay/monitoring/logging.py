"""
Structured logging configuration.

Events are rendered by structlog as JSON and written through a stdlib
handler with python-json-logger. Request ids and settlement correlation
ids are bound through structlog.contextvars and merged into every event.
"""
import logging
import sys
from typing import Any, MutableMapping

import structlog
from pythonjsonlogger import jsonlogger

from seatpay.config import get_settings

# Fields that must never reach the log stream in clear text
SENSITIVE_KEYS = frozenset(
    {
        "client_secret",
        "access_token",
        "api_key",
        "webhook_secret",
        "payout_details",
        "signature",
        "card_number",
    }
)


def scrub_sensitive_data(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """
    Mask payment secrets before rendering.

    Strings keep their last four characters so a client secret or token can
    still be matched against the rail's dashboard; anything else is replaced
    outright.
    """
    for key in SENSITIVE_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 8:
            event_dict[key] = f"***{value[-4:]}"
        else:
            event_dict[key] = "***REDACTED***"
    return event_dict


def add_app_context(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    return event_dict


def setup_logging() -> None:
    """Configure structlog and the root JSON handler from settings."""
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            scrub_sensitive_data,
            add_app_context,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(stream)

    # Provider SDKs and HTTP clients log every request at INFO
    for noisy in ("httpx", "httpcore", "stripe"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )
