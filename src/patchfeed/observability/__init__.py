"""Observability module for patchfeed.

Structured logging for update checks and downloads: JSON output for
production, colored console output for development.

Example:
    >>> from patchfeed.observability import get_logger
    >>>
    >>> logger = get_logger(__name__)
    >>> logger.info("patchfeed.sync.started", product="Billing", files=3)
"""

from patchfeed.observability.logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    sanitize_for_logging,
)

__all__ = [
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "sanitize_for_logging",
]
