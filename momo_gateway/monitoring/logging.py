"""
Structured logging configuration.

structlog renders every event as JSON with the request context (request_id,
tenant_id) merged in. Credential material is masked before rendering, so a
provider payload or credential bundle can be logged as-is.
"""
import logging
import sys
from typing import Any, List, Optional

import structlog
from pythonjsonlogger import jsonlogger

from momo_gateway.config import Settings, get_settings

SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "api_key",
        "api_user",
        "client_secret",
        "pin",
        "encrypted_pin",
        "password",
        "secret",
        "webhook_secret",
        "authorization",
        "x-api-key",
        "ocp-apim-subscription-key",
    }
)
SENSITIVE_SUFFIXES = ("_secret", "_token", "_key")
# Event fields that look sensitive by suffix but only carry identifiers
SAFE_KEYS = frozenset({"idempotency_key"})

REDACTED = "***"

QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def is_sensitive(key: Any) -> bool:
    name = str(key).lower()
    if name in SAFE_KEYS:
        return False
    return name in SENSITIVE_KEYS or name.endswith(SENSITIVE_SUFFIXES)


def redact(value: Any) -> Any:
    """Recursively mask sensitive keys in dicts and lists."""
    if isinstance(value, dict):
        return {k: REDACTED if is_sensitive(k) else redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(v) for v in value]
    return value


class AppContext:
    """
    Processor that stamps app name and environment on every event.

    A single instance sits in the chain and is rebound by setup_logging,
    so loggers cached on first use pick up the new settings.
    """

    def __init__(self) -> None:
        self.app_name: Optional[str] = None
        self.app_env: Optional[str] = None

    def bind(self, settings: Settings) -> None:
        self.app_name = settings.app_name
        self.app_env = settings.app_env

    def __call__(
        self, logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        if self.app_name is not None:
            event_dict.setdefault("app_name", self.app_name)
            event_dict.setdefault("app_env", self.app_env)
        return event_dict


app_context = AppContext()


def redact_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor that masks credential material in log events."""
    return redact(event_dict)


def build_processors() -> List[Any]:
    """Processor chain, ending in redaction and the JSON renderer."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        app_context,
        redact_sensitive,
        structlog.processors.JSONRenderer(),
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Safe to call more than once; the root handler is replaced, not stacked.
    """
    settings = settings or get_settings()
    app_context.bind(settings)

    structlog.configure(
        processors=build_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
