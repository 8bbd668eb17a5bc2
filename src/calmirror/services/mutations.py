"""User-initiated event writes: remote first, then mirrored into the cache.

No cache row is ever created without a successful remote write. When the remote call
fails the cache is left as it was; the next sync run reconciles anything in between.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from ..errors import LocalStoreError, RemoteConflict, RemoteNotFound, ValidationError
from ..models import Calendar, Event, EventInput, event_from_gcal, event_to_gcal_body, new_event_id
from ..remote import RemoteCalendarClient, RemoteEvent
from ..store import CalendarListStore, EventCacheStore
from ..utils.retry import RetryConfig, retry_async

log = logging.getLogger(__name__)

__all__ = ["EventMutationService"]


class EventMutationService:
    def __init__(
        self,
        remote: RemoteCalendarClient,
        calendars: CalendarListStore,
        events: EventCacheStore,
        *,
        retry: RetryConfig | None = None,
        default_tz: str = "UTC",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.remote = remote
        self.calendars = calendars
        self.events = events
        self.retry = retry or RetryConfig()
        self.default_tz = default_tz
        self._sleep = sleep

    async def create_event(self, data: EventInput) -> Event:
        """Create an event remotely and mirror it.

        The event id is generated here so a create that is retried after a lost
        response finds its own earlier insert (HTTP 409) instead of duplicating it.
        """
        data.validate()
        cal = await asyncio.to_thread(self.calendars.get_calendar, data.gcal_id)
        if cal is None:
            raise ValidationError(f"unknown calendar {data.gcal_id!r}")
        if not cal.edit:
            raise ValidationError(f"calendar {cal.calendar_name!r} does not allow local edits")

        event_id = new_event_id()
        body = event_to_gcal_body(data.to_event(event_id), include_id=True)
        attempts = 0

        async def _insert() -> RemoteEvent:
            nonlocal attempts
            attempts += 1
            try:
                return await self.remote.create_event(data.gcal_id, body)
            except RemoteConflict:
                if attempts == 1:
                    raise
                log.info("event-create-replayed event_id=%s", event_id, extra={"gcal_id": cal.gcal_id})
                return await self.remote.get_event(data.gcal_id, event_id)

        created = await retry_async(_insert, retry=self.retry, sleep=self._sleep, what="event-create")
        row = self._mirror_row(cal, created, data, created.event_id or event_id)
        await self._store(row)
        log.info("event-created event_id=%s", row.event_id, extra={"gcal_id": cal.gcal_id})
        return row

    async def update_event(self, gcal_id: str, event_id: str, data: EventInput) -> Event:
        """Replace an event remotely; RemoteNotFound propagates so the caller can resync."""
        data.validate()
        if data.gcal_id != gcal_id:
            raise ValidationError("event input belongs to a different calendar")
        cal = await asyncio.to_thread(self.calendars.get_calendar, gcal_id)
        if cal is None:
            raise ValidationError(f"unknown calendar {gcal_id!r}")

        body = event_to_gcal_body(data.to_event(event_id))
        updated = await retry_async(
            lambda: self.remote.update_event(gcal_id, event_id, body),
            retry=self.retry,
            sleep=self._sleep,
            what="event-update",
        )
        row = self._mirror_row(cal, updated, data, event_id)
        await self._store(row)
        log.info("event-updated event_id=%s", event_id, extra={"gcal_id": gcal_id})
        return row

    async def delete_event(self, gcal_id: str, event_id: str) -> bool:
        """Delete remotely, then drop the cache row.

        A remote NotFound counts as already deleted. Any other remote error propagates
        and the cache row stays. Returns whether a cache row was removed.
        """
        try:
            await retry_async(
                lambda: self.remote.delete_event(gcal_id, event_id),
                retry=self.retry,
                sleep=self._sleep,
                what="event-delete",
            )
        except RemoteNotFound:
            log.info("event-already-deleted event_id=%s", event_id, extra={"gcal_id": gcal_id})
        removed = await asyncio.to_thread(self.events.delete_event, gcal_id, event_id)
        log.info("event-deleted event_id=%s cached=%s", event_id, removed, extra={"gcal_id": gcal_id})
        return removed

    def _mirror_row(
        self, cal: Calendar, remote: RemoteEvent, data: EventInput, event_id: str
    ) -> Event:
        row = None
        if remote.payload.get("id"):
            row = event_from_gcal(
                remote.payload,
                cal.gcal_id,
                calendar_tz=cal.gcal_timezone,
                default_tz=self.default_tz,
            )
        if row is None:
            row = data.to_event(event_id)
        # coordinates only exist locally
        return replace(row, location_lat=data.location_lat, location_lon=data.location_lon)

    async def _store(self, row: Event) -> None:
        try:
            await asyncio.to_thread(self.events.upsert_event, row)
        except LocalStoreError:
            log.warning(
                "cache-mirror-failed event_id=%s; next sync will pick it up",
                row.event_id,
                extra={"gcal_id": row.gcal_id},
            )
            raise
