"""Contract between the sync core and a remote calendar provider.

Every method is a coroutine and a discrete suspension point. Failures surface as one of
RemoteRateLimited, RemoteNotFound, RemoteTransient or RemoteFatal (see errors.py);
pagination, auth and transport details stay behind the implementation.

`iter_events` is an async iterator that yields one listing page's events at a time so
a calendar never has to be materialized in memory by the client.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from .models import Calendar
from .utils.timezones import format_rfc3339, get_zoneinfo, parse_rfc3339

__all__ = [
    "RemoteCalendar",
    "RemoteCalendarClient",
    "RemoteEvent",
    "TimeWindow",
]


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError("time window start must not be after its end")

    def covers(self, other: TimeWindow) -> bool:
        return self.start <= other.start and other.end <= self.end

    def as_params(self) -> dict[str, str]:
        return {"timeMin": format_rfc3339(self.start), "timeMax": format_rfc3339(self.end)}


@dataclass(frozen=True)
class RemoteCalendar:
    gcal_id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    timezone: str | None = None
    deleted: bool = False

    @classmethod
    def from_gcal(cls, entry: Mapping[str, Any]) -> RemoteCalendar:
        return cls(
            gcal_id=str(entry.get("id") or ""),
            summary=entry.get("summaryOverride") or entry.get("summary"),
            description=entry.get("description"),
            location=entry.get("location"),
            timezone=entry.get("timeZone"),
            deleted=bool(entry.get("deleted")),
        )

    def to_calendar(self) -> Calendar | None:
        """Descriptive-only Calendar row; flags default to False for new calendars."""
        if self.deleted or not self.gcal_id:
            return None
        return Calendar(
            gcal_id=self.gcal_id,
            calendar_name=self.summary or self.gcal_id,
            gcal_name=self.summary,
            gcal_description=self.description,
            gcal_location=self.location,
            gcal_timezone=self.timezone if get_zoneinfo(self.timezone) is not None else None,
        )


@dataclass(frozen=True)
class RemoteEvent:
    """One event as reported by the provider.

    `payload` is the provider resource; `partial` is True when the listing only carried
    identity/metadata fields and the full resource must be fetched before writing.
    """

    event_id: str
    updated: datetime | None = None
    cancelled: bool = False
    partial: bool = False
    payload: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_gcal(cls, item: Mapping[str, Any], *, partial: bool = False) -> RemoteEvent:
        try:
            updated = parse_rfc3339(item.get("updated"))
        except (TypeError, ValueError):
            # unknown; a partial listing then fetches the detail
            updated = None
        return cls(
            event_id=str(item.get("id") or ""),
            updated=updated,
            cancelled=item.get("status") == "cancelled",
            partial=partial or "start" not in item or "end" not in item,
            payload=dict(item),
        )


@runtime_checkable
class RemoteCalendarClient(Protocol):
    async def list_calendars(self) -> list[RemoteCalendar]: ...

    def iter_events(self, gcal_id: str, window: TimeWindow) -> AsyncIterator[RemoteEvent]: ...

    async def get_event(self, gcal_id: str, event_id: str) -> RemoteEvent: ...

    async def create_event(self, gcal_id: str, body: Mapping[str, Any]) -> RemoteEvent: ...

    async def update_event(
        self, gcal_id: str, event_id: str, body: Mapping[str, Any]
    ) -> RemoteEvent: ...

    async def delete_event(self, gcal_id: str, event_id: str) -> None: ...

    async def aclose(self) -> None: ...
