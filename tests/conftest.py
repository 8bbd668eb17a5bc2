from __future__ import annotations

from collections.abc import AsyncIterator, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from calmirror.errors import RemoteConflict, RemoteNotFound
from calmirror.remote import RemoteCalendar, RemoteEvent, TimeWindow
from calmirror.store import CacheStores, open_stores
from calmirror.utils.retry import RetryConfig
from calmirror.utils.timezones import format_rfc3339, parse_google_datetime

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def gcal_event(
    event_id: str,
    start: datetime,
    end: datetime | None = None,
    *,
    summary: str | None = "Event",
    updated: datetime | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """Google Events resource as returned by events.list/get."""
    payload: dict[str, Any] = {
        "id": event_id,
        "status": "confirmed",
        "updated": format_rfc3339(updated or NOW),
        "start": {"dateTime": format_rfc3339(start)},
        "end": {"dateTime": format_rfc3339(end or start + timedelta(hours=1))},
        "htmlLink": f"https://calendar.google.com/event?eid={event_id}",
    }
    if summary is not None:
        payload["summary"] = summary
    payload.update(extra)
    return payload


class FakeRemote:
    """In-memory RemoteCalendarClient.

    `fail` maps "op" or "op:gcal_id" to a list of exceptions raised (one per call)
    before the operation starts behaving normally.
    """

    def __init__(self) -> None:
        self.calendar_entries: list[dict[str, Any]] = []
        self.events: dict[str, dict[str, dict[str, Any]]] = {}
        self.fail: dict[str, list[BaseException]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.minimal = False
        self.closed = False

    def add_calendar(self, gcal_id: str, summary: str, **extra: Any) -> None:
        self.calendar_entries.append({"id": gcal_id, "summary": summary, **extra})
        self.events.setdefault(gcal_id, {})

    def put_event(self, gcal_id: str, payload: dict[str, Any]) -> None:
        self.events.setdefault(gcal_id, {})[payload["id"]] = payload

    def _maybe_fail(self, op: str, gcal_id: str | None = None) -> None:
        for key in (f"{op}:{gcal_id}", op):
            pending = self.fail.get(key)
            if pending:
                raise pending.pop(0)

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    async def list_calendars(self) -> list[RemoteCalendar]:
        self.calls.append(("list_calendars",))
        self._maybe_fail("list_calendars")
        return [RemoteCalendar.from_gcal(e) for e in self.calendar_entries]

    async def iter_events(self, gcal_id: str, window: TimeWindow) -> AsyncIterator[RemoteEvent]:
        self.calls.append(("iter_events", gcal_id, window))
        self._maybe_fail("iter_events", gcal_id)
        for payload in list(self.events.get(gcal_id, {}).values()):
            if "start" in payload and "end" in payload:
                start = parse_google_datetime(payload["start"])
                end = parse_google_datetime(payload["end"])
                if not (end > window.start and start < window.end):
                    continue
            if self.minimal:
                item = {k: payload[k] for k in ("id", "status", "updated") if k in payload}
                yield RemoteEvent.from_gcal(item, partial=True)
            else:
                yield RemoteEvent.from_gcal(payload)

    async def get_event(self, gcal_id: str, event_id: str) -> RemoteEvent:
        self.calls.append(("get_event", gcal_id, event_id))
        self._maybe_fail("get_event", gcal_id)
        try:
            return RemoteEvent.from_gcal(self.events[gcal_id][event_id])
        except KeyError:
            raise RemoteNotFound(f"{event_id} not found", status_code=404) from None

    async def create_event(self, gcal_id: str, body: Mapping[str, Any]) -> RemoteEvent:
        self.calls.append(("create_event", gcal_id, dict(body)))
        self._maybe_fail("create_event", gcal_id)
        event_id = body.get("id") or f"srv{len(self.events.get(gcal_id, {}))}"
        if event_id in self.events.get(gcal_id, {}):
            raise RemoteConflict("duplicate id", status_code=409)
        payload = {**body, "id": event_id, "status": "confirmed", "updated": format_rfc3339(NOW)}
        self.put_event(gcal_id, payload)
        return RemoteEvent.from_gcal(payload)

    async def update_event(
        self, gcal_id: str, event_id: str, body: Mapping[str, Any]
    ) -> RemoteEvent:
        self.calls.append(("update_event", gcal_id, event_id, dict(body)))
        self._maybe_fail("update_event", gcal_id)
        if event_id not in self.events.get(gcal_id, {}):
            raise RemoteNotFound(f"{event_id} not found", status_code=404)
        payload = {**body, "id": event_id, "status": "confirmed", "updated": format_rfc3339(NOW)}
        self.put_event(gcal_id, payload)
        return RemoteEvent.from_gcal(payload)

    async def delete_event(self, gcal_id: str, event_id: str) -> None:
        self.calls.append(("delete_event", gcal_id, event_id))
        self._maybe_fail("delete_event", gcal_id)
        if self.events.get(gcal_id, {}).pop(event_id, None) is None:
            raise RemoteNotFound(f"{event_id} not found", status_code=404)

    async def aclose(self) -> None:
        self.closed = True


async def no_sleep(_delay: float) -> None:
    return None


FAST_RETRY = RetryConfig(max_retries=2, backoff_initial_sec=0.01, jitter_frac=0.0)


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def stores(tmp_path) -> Iterator[CacheStores]:
    s = open_stores(str(tmp_path / "cache.sqlite"), pool_size=3)
    try:
        yield s
    finally:
        s.close()
