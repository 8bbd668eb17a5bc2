"""Row models for the local cache and their mapping to/from Google payloads.

Calendar rows carry two kinds of fields:
- descriptive fields refreshed from provider metadata (gcal_name, gcal_description,
  gcal_location, gcal_timezone);
- operator flags (sync, display, edit) owned locally and never taken from the provider.

`merge_calendar` is the only way descriptive fields reach an existing row; it copies
them field by field onto the stored row so the flags survive every discovery pass.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from .errors import ValidationError
from .utils.timezones import format_rfc3339, parse_google_datetime

__all__ = [
    "DESCRIPTIVE_FIELDS",
    "Calendar",
    "Event",
    "EventInput",
    "carry_local_fields",
    "event_from_gcal",
    "event_to_gcal_body",
    "merge_calendar",
    "new_event_id",
]

DESCRIPTIVE_FIELDS: tuple[str, ...] = (
    "gcal_name",
    "gcal_description",
    "gcal_location",
    "gcal_timezone",
)


@dataclass(frozen=True)
class Calendar:
    gcal_id: str
    calendar_name: str
    gcal_name: str | None = None
    gcal_description: str | None = None
    gcal_location: str | None = None
    gcal_timezone: str | None = None
    sync: bool = False
    display: bool = False
    edit: bool = False
    last_modified: datetime | None = None

    def descriptive(self) -> tuple[str | None, ...]:
        return tuple(getattr(self, f) for f in DESCRIPTIVE_FIELDS)


def merge_calendar(existing: Calendar | None, incoming: Calendar) -> Calendar | None:
    """Merge provider metadata into the stored row.

    Returns the row to write, or None when nothing observable would change.
    New calendars keep the flags of `incoming` (all False when built from the provider).
    Existing rows keep their calendar_name and flags; only descriptive fields move.
    """
    if existing is None:
        return incoming
    changes = {
        f: getattr(incoming, f)
        for f in DESCRIPTIVE_FIELDS
        if getattr(incoming, f) != getattr(existing, f)
    }
    if not changes:
        return None
    return replace(existing, **changes)


@dataclass(frozen=True)
class Event:
    gcal_id: str
    event_id: str
    start_time: datetime
    end_time: datetime
    name: str
    url: str | None = None
    description: str | None = None
    location_name: str | None = None
    location_lat: float | None = None
    location_lon: float | None = None
    last_modified: datetime | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.start_time.tzinfo is None or self.end_time.tzinfo is None:
            raise ValidationError("event start/end must be timezone-aware")
        if self.start_time > self.end_time:
            raise ValidationError(
                f"event {self.event_id!r} starts after it ends "
                f"({self.start_time.isoformat()} > {self.end_time.isoformat()})"
            )

    def content(self) -> tuple[Any, ...]:
        """Every cached field except last_modified, for change detection."""
        return (
            self.start_time,
            self.end_time,
            self.name,
            self.url,
            self.description,
            self.location_name,
            self.location_lat,
            self.location_lon,
        )


def carry_local_fields(remote: Event, cached: Event | None) -> Event:
    # Google has no coordinates; keep whatever the cache already knows.
    if cached is None:
        return remote
    return replace(
        remote,
        location_lat=remote.location_lat if remote.location_lat is not None else cached.location_lat,
        location_lon=remote.location_lon if remote.location_lon is not None else cached.location_lon,
    )


def new_event_id() -> str:
    # 32 lowercase hex chars: valid in Google's base32hex event id alphabet.
    return uuid.uuid4().hex


@dataclass(frozen=True)
class EventInput:
    gcal_id: str
    name: str
    start: datetime
    end: datetime
    url: str | None = None
    description: str | None = None
    location_name: str | None = None
    location_lat: float | None = None
    location_lon: float | None = None

    def validate(self) -> None:
        if not self.gcal_id or not self.gcal_id.strip():
            raise ValidationError("gcal_id is required")
        if not self.name or not self.name.strip():
            raise ValidationError("event name is required")
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("start and end must be timezone-aware")
        if self.start > self.end:
            raise ValidationError("event start must not be after its end")
        if self.location_lat is not None and not -90.0 <= self.location_lat <= 90.0:
            raise ValidationError("latitude must be within [-90, 90]")
        if self.location_lon is not None and not -180.0 <= self.location_lon <= 180.0:
            raise ValidationError("longitude must be within [-180, 180]")

    def to_event(self, event_id: str) -> Event:
        return Event(
            gcal_id=self.gcal_id,
            event_id=event_id,
            start_time=self.start,
            end_time=self.end,
            name=self.name.strip(),
            url=self.url,
            description=self.description,
            location_name=self.location_name,
            location_lat=self.location_lat,
            location_lon=self.location_lon,
        )


# ----------------------------
# Google payload mapping
# ----------------------------


def event_from_gcal(
    payload: Mapping[str, Any],
    gcal_id: str,
    *,
    calendar_tz: str | None = None,
    default_tz: str = "UTC",
) -> Event | None:
    """Map a Google Events resource to a cache row.

    Returns None for events the cache cannot hold (no start/end or no summary).
    """
    event_id = payload.get("id")
    if not event_id:
        raise ValidationError("Google event missing 'id'")
    start, end = payload.get("start"), payload.get("end")
    if not start or not end or not payload.get("summary"):
        return None
    return Event(
        gcal_id=gcal_id,
        event_id=str(event_id),
        start_time=parse_google_datetime(start, calendar_tz=calendar_tz, default_tz=default_tz),
        end_time=parse_google_datetime(end, calendar_tz=calendar_tz, default_tz=default_tz),
        name=str(payload["summary"]),
        url=(payload.get("source") or {}).get("url") or payload.get("htmlLink"),
        description=payload.get("description"),
        location_name=payload.get("location"),
    )


def event_to_gcal_body(event: Event, *, include_id: bool = False) -> dict[str, Any]:
    """Full-replacement body for events.insert / events.update."""
    body: dict[str, Any] = {
        "summary": event.name,
        "start": {"dateTime": format_rfc3339(event.start_time)},
        "end": {"dateTime": format_rfc3339(event.end_time)},
    }
    if include_id:
        body["id"] = event.event_id
    if event.description is not None:
        body["description"] = event.description
    if event.location_name is not None:
        body["location"] = event.location_name
    if event.url:
        body["source"] = {"title": event.name, "url": event.url}
    return body
