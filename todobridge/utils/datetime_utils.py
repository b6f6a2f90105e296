"""Datetime helpers for Graph timestamps and SQLite storage."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Graph emits up to seven fractional digits ("2024-05-01T10:00:00.1234567Z")
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_graph_datetime(value: str) -> datetime:
    """Parse an ISO-8601 Graph timestamp into an aware UTC datetime."""
    text = _FRACTION_RE.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text)).astimezone(timezone.utc)


def resolve_zone(name: str | None) -> ZoneInfo | timezone:
    """Return a tzinfo for an IANA zone name, UTC for unknown names."""
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug(f"Unknown time zone '{name}', assuming UTC")
        return timezone.utc


def parse_date_time_time_zone(value: dict | None) -> datetime | None:
    """Parse a Graph dateTimeTimeZone object ({"dateTime", "timeZone"})."""
    if not value or not value.get("dateTime"):
        return None
    local = datetime.fromisoformat(_FRACTION_RE.sub(r"\1", value["dateTime"]).rstrip("Z"))
    if local.tzinfo is None:
        local = local.replace(tzinfo=resolve_zone(value.get("timeZone")))
    return local


def to_timestamp(value: datetime | None) -> float | None:
    if value is None:
        return None
    return ensure_aware(value).timestamp()


def safe_fromtimestamp(value: float | None) -> datetime | None:
    """Convert a stored Unix timestamp to an aware UTC datetime."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning(f"Ignoring invalid timestamp: {value}")
        return None
