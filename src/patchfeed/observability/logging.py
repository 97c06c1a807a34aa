"""Structured logging for patchfeed.

Every module logs through ``get_logger(__name__)`` with a dotted event name
and key/value context (``patchfeed.sync.completed product=Billing``).
structlog renders events through stdlib logging, so records from httpx and
other libraries share the same handler and format.

Output goes to stderr; stdout is reserved for CLI results (staging paths,
changelogs). Values of key-material fields are redacted before any renderer
sees them.

Environment Variables:
    PATCHFEED_LOG_FORMAT: "json" for one JSON object per line, "console" (default)
    PATCHFEED_LOG_LEVEL: DEBUG, INFO (default), WARNING or ERROR
    PATCHFEED_SERVICE_NAME: Value of the ``service`` field on every event

Example:
    >>> configure_logging(log_format="json", log_level="DEBUG")
    >>> get_logger("patchfeed.fetcher").info("patchfeed.fetcher.update_available", version="2.1.0")
"""

import logging
import os
import re
import sys
from dataclasses import dataclass
from typing import Any

import structlog
from structlog.typing import EventDict, Processor

ENV_LOG_FORMAT = "PATCHFEED_LOG_FORMAT"
ENV_LOG_LEVEL = "PATCHFEED_LOG_LEVEL"
ENV_SERVICE_NAME = "PATCHFEED_SERVICE_NAME"

REDACTED_PLACEHOLDER = "***REDACTED***"

# Matched against each part of a field name split on non-alphanumerics,
# so "blob_key" and "archive-iv" match but "keyboard" does not.
_SENSITIVE_KEY_PARTS = frozenset({"key", "iv", "secret", "password", "token", "pem"})
_KEY_SPLIT_RE = re.compile(r"[^a-z0-9]+")

_configured = False


@dataclass(frozen=True)
class LogSettings:
    """Resolved logging options."""

    log_format: str = "console"
    log_level: str = "INFO"
    service_name: str = "patchfeed"

    @classmethod
    def resolve(
        cls,
        log_format: str | None = None,
        log_level: str | None = None,
        service_name: str | None = None,
    ) -> "LogSettings":
        """Explicit arguments win over environment variables, which win over defaults."""
        defaults = cls()
        log_format = log_format or os.environ.get(ENV_LOG_FORMAT) or defaults.log_format
        log_level = log_level or os.environ.get(ENV_LOG_LEVEL) or defaults.log_level
        service_name = service_name or os.environ.get(ENV_SERVICE_NAME) or defaults.service_name
        return cls(log_format.lower(), log_level.upper(), service_name)


def _is_sensitive_key(name: str) -> bool:
    return not _SENSITIVE_KEY_PARTS.isdisjoint(_KEY_SPLIT_RE.split(name.lower()))


def sanitize_for_logging(data: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``data`` with key material replaced by REDACTED_PLACEHOLDER.

    A field is redacted when one part of its name is key, iv, secret,
    password, token or pem. Nested dicts, and dicts inside lists, are
    sanitized too.

    Example:
        >>> sanitize_for_logging({"base_uri": "https://u.example", "blob_key": "AAAA"})
        {'base_uri': 'https://u.example', 'blob_key': '***REDACTED***'}
    """
    return {name: _sanitize_value(name, value) for name, value in (data or {}).items()}


def _sanitize_value(name: str, value: Any) -> Any:
    if _is_sensitive_key(name):
        return REDACTED_PLACEHOLDER
    if isinstance(value, dict):
        return sanitize_for_logging(value)
    if isinstance(value, list):
        return [sanitize_for_logging(v) if isinstance(v, dict) else v for v in value]
    return value


def _redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    return sanitize_for_logging(event_dict)


def _pre_chain() -> list[Processor]:
    """Processors shared by structlog events and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _redact_sensitive,
    ]


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def _install_stderr_handler(formatter: logging.Formatter, level: str) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def configure_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    service_name: str | None = None,
    force: bool = False,
) -> None:
    """Configure structlog and the root stdlib logger.

    Runs once per process unless ``force`` is set; ``get_logger`` calls it
    with defaults on first use.

    Args:
        log_format: "json" or "console"; falls back to PATCHFEED_LOG_FORMAT.
        log_level: Minimum level name; falls back to PATCHFEED_LOG_LEVEL.
        service_name: ``service`` field value; falls back to PATCHFEED_SERVICE_NAME.
        force: Reconfigure even if logging is already configured.
    """
    global _configured
    if _configured and not force:
        return

    settings = LogSettings.resolve(log_format, log_level, service_name)
    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            _renderer(settings.log_format),
        ],
    )
    _install_stderr_handler(formatter, settings.log_level)
    structlog.contextvars.bind_contextvars(service=settings.service_name)
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for ``name``, configuring logging with defaults if needed."""
    if not _configured:
        configure_logging()
    return structlog.stdlib.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Add fields (e.g. the product being updated) to every later event in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
