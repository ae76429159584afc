import re
import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_PII_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "api_key",
    "apikey",
    "signature",
    "stripe_signature",
    "webhook_secret",
    "client_secret",
    "bot_token",
    "email",
}
_PII_SUFFIXES = ("_token", "_secret", "_password", "_key", "_signature")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _PII_FIELDS:
        return True
    return key_norm.endswith(_PII_SUFFIXES)


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact secrets, signatures and e-mail addresses from logs.
    Webhook payloads are logged for debugging, so this runs before rendering.
    """

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, list):
            return [redact_recursive(item) for item in data]
        elif isinstance(data, str):
            return _EMAIL_REGEX.sub("[EMAIL_REDACTED]", data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,  # event_id / subscription_id binding
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (uvicorn, apscheduler, sqlalchemy) to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def bind_event_context(**identifiers: Any) -> None:
    """Attach correlation identifiers to every log line of the current task."""
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in identifiers.items() if value is not None}
    )
