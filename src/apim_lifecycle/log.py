"""Structured logging configuration using structlog.

Subscription keys and access tokens are masked before rendering.
"""

import logging
import re
import sys
from typing import Any

import structlog
from pydantic import SecretStr

REDACTED = "**********"

SENSITIVE_KEYS = {"primary_key", "secondary_key", "primarykey", "secondarykey", "access_token", "token", "authorization"}

_BEARER = re.compile(r"Bearer\s+\S+", re.IGNORECASE)


def _redact_value(value: Any) -> Any:
    if isinstance(value, SecretStr):
        return REDACTED
    if isinstance(value, str):
        return _BEARER.sub(f"Bearer {REDACTED}", value)
    if isinstance(value, dict):
        return _redact_dict(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(v) for v in value]
    return value


def _redact_dict(d: dict) -> dict:
    return {
        k: REDACTED if isinstance(k, str) and k.lower().replace("-", "_") in SENSITIVE_KEYS else _redact_value(v)
        for k, v in d.items()
    }


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor masking credentials in every event."""
    return _redact_dict(event_dict)


def configure_logging(level: str = "INFO", json_output: bool = False, stream: Any = sys.stderr) -> None:
    """Configure structlog and the stdlib root logger it writes through."""
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=stream,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)
