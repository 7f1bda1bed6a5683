"""
Structured logging configuration using structlog.

JSON in production, console output elsewhere. Every event carries the
request context bound by the middleware (request id, method, path) plus the
service name and environment. Payment secrets are masked before rendering:
card numbers keep their last four digits, everything else in
SENSITIVE_KEYS is replaced outright.
"""

import logging
import re
import sys

import structlog

from activity_booking.core.config import get_settings

SENSITIVE_KEYS = frozenset({
    "number",
    "card_number",
    "cvc",
    "token",
    "api_key",
    "authorization",
    "signature",
    "password",
    "secret",
})

_CARD_NUMBER = re.compile(r"\b\d{12,19}\b")


def _mask(key: str, value):
    if isinstance(value, dict):
        return {k: _mask(k, v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_mask(key, v) for v in value]
    if key.lower() in SENSITIVE_KEYS and value:
        text = str(value)
        if key.lower() in ("number", "card_number") and len(text) > 4:
            return "*" * (len(text) - 4) + text[-4:]
        return "***"
    if isinstance(value, str):
        return _CARD_NUMBER.sub(lambda m: "*" * (len(m.group()) - 4) + m.group()[-4:], value)
    return value


def redact_payment_secrets(logger, method_name, event_dict):
    for key in list(event_dict):
        if key == "event":
            continue
        event_dict[key] = _mask(key, event_dict[key])
    return event_dict


def setup_logging() -> None:
    settings = get_settings()

    def add_service_context(logger, method_name, event_dict):
        event_dict.setdefault("service", settings.APP_NAME)
        event_dict.setdefault("environment", settings.ENVIRONMENT)
        return event_dict

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_service_context,
        redact_payment_secrets,
    ]

    if settings.ENVIRONMENT == "production":
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=settings.ENVIRONMENT == "development")

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # uvicorn access lines duplicate request_completed; httpx would log processor URLs
    for name in ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
