"""ISO-8601 timestamps as they appear in manifests.

Publishers on other platforms write seven fractional digits and a ``Z``
suffix (``2024-05-01T10:00:00.1234567Z``); ``datetime`` keeps six, so extra
digits are truncated. Naive values are taken to be UTC.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Raises:
        ValueError: If ``value`` is not ISO-8601 or falls outside the UTC range.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text, count=1)
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except OverflowError as e:
        # e.g. 0001-01-01T00:00:00+05:00 is valid locally but before year 1 in UTC
        raise ValueError(f"timestamp out of range in UTC: {value!r}") from e


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render ``value`` as ``YYYY-MM-DDTHH:MM:SS.ffffffZ``."""
    utc = ensure_utc(value)
    return utc.replace(tzinfo=None).isoformat(timespec="microseconds") + "Z"


def from_posix(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)
