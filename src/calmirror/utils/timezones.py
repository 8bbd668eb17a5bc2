"""Timezone and timestamp helpers for Google Calendar payloads and the cache.

Responsibilities
- Resolve TZIDs using stdlib zoneinfo.
- Parse Google Calendar `start`/`end` payloads into UTC datetimes.
- Format/parse the cache's timestamp text representation.

Google Calendar payloads (examples)
- All-day:
  {"date": "2025-08-23"}  # optional "timeZone"
- Timed:
  {"dateTime": "2025-08-23T14:00:00-04:00", "timeZone": "America/New_York"}
  {"dateTime": "2025-08-23T18:00:00", "timeZone": "UTC"}  # naive dt with explicit tzid

Notes
- All-day events are anchored at local midnight of the payload zone, else the
  calendar zone, else the configured default, and then converted to UTC.
- The cache stores UTC text with microseconds so lexical order equals time order.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dtparser

__all__ = [
    "ensure_tz",
    "format_rfc3339",
    "from_db",
    "get_zoneinfo",
    "parse_google_datetime",
    "parse_rfc3339",
    "to_db",
    "utc_now",
]

DB_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def get_zoneinfo(tzid: str | None) -> ZoneInfo | None:
    """Resolve a TZID to ZoneInfo, returning None if not found or not provided."""
    if not tzid:
        return None
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        if tzid.upper() in {"UTC", "Z"}:
            return ZoneInfo("UTC")
        return None


def ensure_tz(dt: datetime, tzid: str | None, default_tz: str = "UTC") -> datetime:
    """Attach tzid (or default_tz, or UTC) to a naive datetime; aware values pass through."""
    if dt.tzinfo is not None:
        return dt
    z = get_zoneinfo(tzid) or get_zoneinfo(default_tz) or ZoneInfo("UTC")
    return dt.replace(tzinfo=z)


def parse_google_datetime(
    payload: Mapping[str, object],
    *,
    calendar_tz: str | None = None,
    default_tz: str = "UTC",
) -> datetime:
    """Parse a Google `start`/`end` payload into an aware UTC datetime."""
    tzid = str(payload["timeZone"]) if payload.get("timeZone") else None
    if payload.get("dateTime") is not None:
        dt = dtparser.isoparse(str(payload["dateTime"]))
        return ensure_tz(dt, tzid or calendar_tz, default_tz=default_tz).astimezone(UTC)
    if payload.get("date") is not None:
        day = date.fromisoformat(str(payload["date"]))
        z = get_zoneinfo(tzid) or get_zoneinfo(calendar_tz) or get_zoneinfo(default_tz)
        return datetime.combine(day, time(0, 0), tzinfo=z or UTC).astimezone(UTC)
    raise ValueError("Google datetime payload must contain either 'date' or 'dateTime'.")


def parse_rfc3339(value: str | None) -> datetime | None:
    """Parse provider timestamps such as `updated`; returns None when absent."""
    if not value:
        return None
    return ensure_tz(dtparser.isoparse(value), "UTC").astimezone(UTC)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def to_db(dt: datetime) -> str:
    if dt.tzinfo is None:
        raise ValueError("naive datetimes cannot be stored; attach a timezone first")
    return dt.astimezone(UTC).strftime(DB_FORMAT)


def from_db(value: str) -> datetime:
    return datetime.strptime(value, DB_FORMAT).replace(tzinfo=UTC)
