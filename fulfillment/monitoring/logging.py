"""
Structured logging configuration.

structlog builds every event; the stdlib root handler writes it. In JSON mode
the event dict is handed to python-json-logger as record extras, so each line
is one flat JSON object. Console mode renders with structlog's dev renderer.

Gateway metadata and settings can carry secrets, so those keys are masked
before rendering.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from pythonjsonlogger import jsonlogger

from fulfillment.config import Settings, get_settings

SECRET_KEYS = frozenset(
    {"payment_method_token", "api_key", "stripe_secret_key", "card_number", "client_secret"}
)

NOISY_LOGGERS = {
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "asyncio": logging.WARNING,
    "stripe": logging.INFO,
}


def _mask(value: Any) -> str:
    if isinstance(value, str) and len(value) > 8:
        return f"***{value[-4:]}"
    return "***REDACTED***"


def _scrub(data: dict[str, Any]) -> dict[str, Any]:
    scrubbed = {}
    for key, value in data.items():
        if key in SECRET_KEYS:
            scrubbed[key] = _mask(value)
        elif isinstance(value, dict):
            scrubbed[key] = _scrub(value)
        else:
            scrubbed[key] = value
    return scrubbed


def scrub_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask secret-bearing keys, including inside nested payloads."""
    return _scrub(event_dict)


def app_context_processor(settings: Settings) -> Any:
    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        return event_dict

    return add_app_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structlog and the root handler.

    Args:
        settings: Logging settings (defaults to application settings)
    """
    settings = settings or get_settings()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        app_context_processor(settings),
        scrub_secrets,
    ]

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        processors.append(structlog.stdlib.render_to_log_kwargs)
        handler.setFormatter(
            jsonlogger.JsonFormatter("%(message)s", rename_fields={"message": "event"})
        )
    else:
        processors.append(structlog.dev.ConsoleRenderer())
        handler.setFormatter(logging.Formatter("%(message)s"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        log_json=settings.log_json,
        app_env=settings.app_env,
    )
