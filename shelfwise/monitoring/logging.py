"""
Structured logging configuration.

structlog renders every event as JSON; stdlib records (uvicorn, SQLAlchemy)
go through python-json-logger. Request IDs are bound through contextvars by
the API middleware. The process context (app name, environment, disabled
feature switches) is captured once at setup rather than read per event.
"""
import logging
import sys
from typing import Any, Dict, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from shelfwise.config import FeatureFlags, Settings, get_settings

# Event fields that carry a borrower's email address.
EMAIL_FIELDS = ("recipient", "recipient_email", "email")


def mask_email(address: str) -> str:
    """Keep the first character and the domain: ada@example.com -> a***@example.com."""
    local, sep, domain = address.partition("@")
    if not sep or not local:
        return address
    return f"{local[0]}***@{domain}"


def mask_recipient(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for field in EMAIL_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, str):
            event_dict[field] = mask_email(value)
    return event_dict


def disabled_features(flags: FeatureFlags) -> List[str]:
    return sorted(name for name, enabled in flags.model_dump().items() if not enabled)


class AppContext:
    """
    Processor adding the process context to every event.

    Args:
        settings: Settings the process was built from
        flags: Active feature switches; disabled ones are listed under
            "degraded" so an emergency override shows up in every line
    """

    def __init__(self, settings: Settings, flags: Optional[FeatureFlags] = None):
        self.context: Dict[str, Any] = {
            "app_name": settings.app_name,
            "app_env": settings.app_env,
        }
        degraded = disabled_features(flags) if flags is not None else []
        if degraded:
            self.context["degraded"] = degraded

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in self.context.items():
            event_dict.setdefault(key, value)
        return event_dict


def setup_logging(
    settings: Optional[Settings] = None, flags: Optional[FeatureFlags] = None
) -> None:
    """
    Configure structured logging with JSON formatter.

    Args:
        settings: Settings to log under (defaults to get_settings())
        flags: Active feature switches of the process being configured
    """
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            mask_recipient,
            AppContext(settings, flags),
            structlog.processors.JSONRenderer(),
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

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    logger = structlog.get_logger(__name__)
    logger.info("logging_configured", log_level=settings.log_level)
    if flags is not None and disabled_features(flags):
        logger.warning("feature_switches_disabled", disabled=disabled_features(flags))
