"""Reconciliation engine: mirror remote calendars and events into the local cache.

One run
1. Discovery: list remote calendars and upsert them with the flag-preserving merge.
2. Dispatch: every calendar with sync=true becomes a CalendarJob on an asyncio.Queue.
3. A fixed pool of worker tasks drains the queue. Each job runs
   Fetching -> Diffing -> Applying -> Done, or ends in Failed.
4. Workers report finished jobs on a result queue; the run assembles a RunSummary.

Fetch breadth is the only difference between modes: "full" lists the maximum window,
"incremental" a narrower one. Cached rows are compared only inside the same window,
so a narrow window never deletes events it did not look at. A cached row inside the
window that the listing omits is fetched by id before deletion: only NotFound or a
cancelled status removes it, otherwise it was rescheduled and the row is updated.

Failure policy
- Retryable listing errors are retried with backoff, then the calendar is Failed.
- RemoteFatal anywhere stops the run: no new jobs start, in-flight jobs stop after
  their current step, and SyncAborted carries the partial summary to the caller.
- Row failures (store errors, bad payloads, detail fetches that keep failing) are
  counted and logged; the rest of the job continues.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from ..errors import (
    CalendarMirrorError,
    LocalStoreError,
    RemoteError,
    RemoteFatal,
    RemoteNotFound,
    SyncAborted,
)
from ..models import Calendar, Event, carry_local_fields, event_from_gcal
from ..remote import RemoteCalendarClient, RemoteEvent, TimeWindow
from ..store import CalendarListStore, EventCacheStore
from ..utils.retry import RetryConfig, retry_async
from ..utils.timezones import utc_now

if TYPE_CHECKING:  # pragma: no cover
    from ..config import SyncConfig

log = logging.getLogger(__name__)

__all__ = [
    "CalendarJob",
    "CalendarSyncResult",
    "JobState",
    "RunSummary",
    "SyncEngine",
    "SyncMode",
    "SyncWindows",
]


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class JobState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    APPLYING = "applying"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.IDLE: frozenset({JobState.FETCHING, JobState.FAILED}),
    JobState.FETCHING: frozenset({JobState.DIFFING, JobState.FAILED}),
    JobState.DIFFING: frozenset({JobState.APPLYING, JobState.FAILED}),
    JobState.APPLYING: frozenset({JobState.DONE, JobState.FAILED}),
    JobState.DONE: frozenset(),
    JobState.FAILED: frozenset(),
}

_COUNTERS = ("fetched", "added", "updated", "deleted", "unchanged", "skipped", "failed")


@dataclass
class CalendarSyncResult:
    gcal_id: str
    calendar_name: str | None = None
    state: JobState = JobState.IDLE
    fetched: int = 0
    added: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None

    def counts(self) -> dict[str, int]:
        return {k: getattr(self, k) for k in _COUNTERS}


@dataclass
class RunSummary:
    mode: str
    discovered: int = 0
    discovery_failed: int = 0
    discovery_error: str | None = None
    calendars: dict[str, CalendarSyncResult] = field(default_factory=dict)

    def aggregate(self) -> dict[str, int]:
        total = dict.fromkeys(_COUNTERS, 0)
        for res in self.calendars.values():
            for k in total:
                total[k] += getattr(res, k)
        return total

    @property
    def failed_calendars(self) -> list[str]:
        return sorted(g for g, r in self.calendars.items() if r.state is JobState.FAILED)

    def exit_code(self) -> int:
        """0 when everything converged, 2 when anything was left behind."""
        if self.failed_calendars or self.discovery_error or self.discovery_failed:
            return 2
        return 0 if self.aggregate()["failed"] == 0 else 2


@dataclass(frozen=True)
class SyncWindows:
    incremental_past_days: int = 0
    incremental_future_days: int = 90
    full_past_days: int = 3650
    full_future_days: int = 3650

    @classmethod
    def from_config(cls, cfg: SyncConfig) -> SyncWindows:
        return cls(
            incremental_past_days=cfg.incremental_past_days,
            incremental_future_days=cfg.incremental_future_days,
            full_past_days=cfg.full_past_days,
            full_future_days=cfg.full_future_days,
        )

    def window_for(self, mode: SyncMode | str, now: datetime) -> TimeWindow:
        if SyncMode(mode) is SyncMode.FULL:
            past, future = self.full_past_days, self.full_future_days
        else:
            past, future = self.incremental_past_days, self.incremental_future_days
        return TimeWindow(now - timedelta(days=past), now + timedelta(days=future))


@dataclass
class _Plan:
    writes: list[tuple[str, Event]] = field(default_factory=list)  # ("add" | "update", row)
    deletes: list[str] = field(default_factory=list)


class CalendarJob:
    """Reconciliation of one calendar within one run."""

    def __init__(self, calendar: Calendar, window: TimeWindow) -> None:
        self.calendar = calendar
        self.window = window
        self.result = CalendarSyncResult(
            gcal_id=calendar.gcal_id, calendar_name=calendar.calendar_name
        )

    @property
    def gcal_id(self) -> str:
        return self.calendar.gcal_id

    @property
    def state(self) -> JobState:
        return self.result.state

    def advance(self, new: JobState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal job transition {self.state.value} -> {new.value}")
        self.result.state = new

    def fail(self, error: BaseException | str) -> None:
        if self.state in (JobState.DONE, JobState.FAILED):
            return
        self.result.error = str(error)
        self.advance(JobState.FAILED)


class SyncEngine:
    def __init__(
        self,
        remote: RemoteCalendarClient,
        calendars: CalendarListStore,
        events: EventCacheStore,
        *,
        retry: RetryConfig | None = None,
        workers: int = 4,
        windows: SyncWindows | None = None,
        default_tz: str = "UTC",
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.remote = remote
        self.calendars = calendars
        self.events = events
        self.retry = retry or RetryConfig()
        self.workers = workers
        self.windows = windows or SyncWindows()
        self.default_tz = default_tz
        self._clock = clock
        self._sleep = sleep

    async def run(self, mode: SyncMode | str = SyncMode.INCREMENTAL) -> RunSummary:
        """Run one reconciliation pass and return its summary.

        Raises SyncAborted when a RemoteFatal error stops the run.
        """
        mode = SyncMode(mode)
        summary = RunSummary(mode=mode.value)
        window = self.windows.window_for(mode, self._clock())
        log.info(
            "sync-run-start mode=%s window=%s..%s",
            mode.value,
            window.start.isoformat(),
            window.end.isoformat(),
        )

        await self._discover(summary)

        targets = await asyncio.to_thread(self.calendars.list_sync_enabled)
        work: asyncio.Queue[Calendar] = asyncio.Queue()
        for cal in targets:
            work.put_nowait(cal)
        results: asyncio.Queue[tuple[CalendarSyncResult, RemoteFatal | None]] = asyncio.Queue()
        abort = asyncio.Event()

        n = min(self.workers, len(targets))
        await asyncio.gather(*(self._worker(work, results, abort, window) for _ in range(n)))

        fatal: RemoteFatal | None = None
        while not results.empty():
            res, exc = results.get_nowait()
            summary.calendars[res.gcal_id] = res
            if exc is not None and fatal is None:
                fatal = exc

        if fatal is not None:
            log.error("sync-run-aborted mode=%s error=%s", mode.value, fatal)
            raise SyncAborted(fatal, summary)

        log.info(
            "sync-run-complete mode=%s calendars=%d failed_calendars=%d %s",
            mode.value,
            len(summary.calendars),
            len(summary.failed_calendars),
            " ".join(f"{k}={v}" for k, v in summary.aggregate().items()),
        )
        return summary

    # -------------
    # Discovery
    # -------------

    async def _discover(self, summary: RunSummary) -> None:
        try:
            remote_cals = await retry_async(
                self.remote.list_calendars,
                retry=self.retry,
                sleep=self._sleep,
                what="calendar-discovery",
            )
        except RemoteFatal as exc:
            log.error("calendar-discovery-fatal error=%s", exc)
            raise SyncAborted(exc, summary) from exc
        except RemoteError as exc:
            # Keep going with the calendars already cached.
            summary.discovery_error = str(exc)
            log.warning("calendar-discovery-failed error=%s", exc)
            return

        for rc in remote_cals:
            cal = rc.to_calendar()
            if cal is None:
                continue
            summary.discovered += 1
            try:
                written = await asyncio.to_thread(self.calendars.upsert_calendar, cal)
            except LocalStoreError as exc:
                summary.discovery_failed += 1
                log.warning(
                    "calendar-upsert-failed error=%s", exc, extra={"gcal_id": cal.gcal_id}
                )
                continue
            if written:
                log.debug("calendar-upserted", extra={"gcal_id": cal.gcal_id})

    # -------------
    # Workers
    # -------------

    async def _worker(
        self,
        work: asyncio.Queue[Calendar],
        results: asyncio.Queue[tuple[CalendarSyncResult, RemoteFatal | None]],
        abort: asyncio.Event,
        window: TimeWindow,
    ) -> None:
        while not abort.is_set():
            try:
                cal = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            job = CalendarJob(cal, window)
            fatal: RemoteFatal | None = None
            try:
                await self._run_job(job, abort)
            except RemoteFatal as exc:
                fatal = exc
                abort.set()
                job.fail(exc)
                log.error("calendar-job-fatal error=%s", exc, extra={"gcal_id": job.gcal_id})
            except Exception as exc:
                job.fail(exc)
                log.exception(
                    "calendar-job-failed state=%s", job.state.value, extra={"gcal_id": job.gcal_id}
                )
            finally:
                work.task_done()
            await results.put((job.result, fatal))

    async def _run_job(self, job: CalendarJob, abort: asyncio.Event) -> None:
        job.advance(JobState.FETCHING)
        # Rows written by this job are stamped with the listing start, not the write time.
        listed_at = self._clock()
        remote = await retry_async(
            lambda: self._fetch_remote(job),
            retry=self.retry,
            sleep=self._sleep,
            what="event-listing",
        )
        cached = await asyncio.to_thread(
            self.events.list_events_for_calendar, job.gcal_id, job.window.start, job.window.end
        )
        if abort.is_set():
            job.fail("run aborted")
            return

        job.advance(JobState.DIFFING)
        plan = await self._diff(job, remote, {ev.event_id: ev for ev in cached})
        if abort.is_set():
            job.fail("run aborted")
            return

        job.advance(JobState.APPLYING)
        await self._apply(job, plan, listed_at)
        job.advance(JobState.DONE)
        r = job.result
        log.info(
            "calendar-job-done added=%d updated=%d deleted=%d unchanged=%d skipped=%d failed=%d",
            r.added,
            r.updated,
            r.deleted,
            r.unchanged,
            r.skipped,
            r.failed,
            extra={"gcal_id": job.gcal_id},
        )

    async def _fetch_remote(self, job: CalendarJob) -> dict[str, RemoteEvent]:
        # Restarted from the first page when retried.
        out: dict[str, RemoteEvent] = {}
        async for item in self.remote.iter_events(job.gcal_id, job.window):
            if item.cancelled:
                continue
            out[item.event_id] = item
        job.result.fetched = len(out)
        return out

    # -------------
    # Diff
    # -------------

    def _map(self, job: CalendarJob, item: RemoteEvent) -> Event | None:
        return event_from_gcal(
            item.payload,
            job.gcal_id,
            calendar_tz=job.calendar.gcal_timezone,
            default_tz=self.default_tz,
        )

    async def _detail(self, job: CalendarJob, event_id: str) -> RemoteEvent:
        return await retry_async(
            lambda: self.remote.get_event(job.gcal_id, event_id),
            retry=self.retry,
            sleep=self._sleep,
            what="event-detail",
        )

    async def _diff(
        self, job: CalendarJob, remote: dict[str, RemoteEvent], cached: dict[str, Event]
    ) -> _Plan:
        plan = _Plan()
        res = job.result
        for event_id, item in remote.items():
            have = cached.get(event_id)
            if item.partial:
                if (
                    have is not None
                    and have.last_modified is not None
                    and item.updated is not None
                    and item.updated <= have.last_modified
                ):
                    res.unchanged += 1
                    continue
                try:
                    item = await self._detail(job, event_id)
                except RemoteFatal:
                    raise
                except (RemoteError, ValueError) as exc:
                    res.failed += 1
                    log.warning(
                        "event-detail-failed event_id=%s error=%s",
                        event_id,
                        exc,
                        extra={"gcal_id": job.gcal_id},
                    )
                    continue
            try:
                row = self._map(job, item)
            except ValueError as exc:
                res.failed += 1
                log.warning(
                    "event-mapping-failed event_id=%s error=%s",
                    event_id,
                    exc,
                    extra={"gcal_id": job.gcal_id},
                )
                continue
            if row is None:
                res.skipped += 1
                if have is not None:
                    plan.deletes.append(event_id)
                continue
            row = carry_local_fields(row, have)
            if have is None:
                plan.writes.append(("add", row))
            elif row.content() == have.content():
                res.unchanged += 1
            else:
                if (
                    item.updated is not None
                    and have.last_modified is not None
                    and have.last_modified > item.updated
                ):
                    log.warning(
                        "reconcile-discrepancy event_id=%s cached=%s remote=%s",
                        event_id,
                        have.last_modified.isoformat(),
                        item.updated.isoformat(),
                        extra={"gcal_id": job.gcal_id},
                    )
                plan.writes.append(("update", row))

        for event_id, have in cached.items():
            if event_id not in remote:
                await self._confirm_missing(job, plan, have)
        return plan

    async def _confirm_missing(self, job: CalendarJob, plan: _Plan, have: Event) -> None:
        """A cached row the listing did not return: deleted remotely, or moved out of the window."""
        res = job.result
        try:
            item = await self._detail(job, have.event_id)
        except RemoteNotFound:
            plan.deletes.append(have.event_id)
            return
        except RemoteFatal:
            raise
        except (RemoteError, ValueError) as exc:
            res.failed += 1
            log.warning(
                "event-confirm-failed event_id=%s error=%s",
                have.event_id,
                exc,
                extra={"gcal_id": job.gcal_id},
            )
            return
        if item.cancelled:
            plan.deletes.append(have.event_id)
            return
        try:
            row = self._map(job, item)
        except ValueError as exc:
            res.failed += 1
            log.warning(
                "event-mapping-failed event_id=%s error=%s",
                have.event_id,
                exc,
                extra={"gcal_id": job.gcal_id},
            )
            return
        if row is None:
            res.skipped += 1
            plan.deletes.append(have.event_id)
            return
        row = carry_local_fields(row, have)
        if row.content() == have.content():
            res.unchanged += 1
        else:
            log.debug(
                "event-moved-out-of-window event_id=%s start=%s",
                have.event_id,
                row.start_time.isoformat(),
                extra={"gcal_id": job.gcal_id},
            )
            plan.writes.append(("update", row))

    # -------------
    # Apply
    # -------------

    async def _apply(self, job: CalendarJob, plan: _Plan, written_at: datetime) -> None:
        res = job.result
        for kind, row in plan.writes:
            try:
                written = await asyncio.to_thread(
                    self.events.upsert_event, row, written_at=written_at
                )
            except CalendarMirrorError as exc:
                res.failed += 1
                log.warning(
                    "row-write-failed event_id=%s error=%s",
                    row.event_id,
                    exc,
                    extra={"gcal_id": job.gcal_id},
                )
                continue
            if not written:
                res.unchanged += 1
            elif kind == "add":
                res.added += 1
            else:
                res.updated += 1

        for event_id in plan.deletes:
            try:
                removed = await asyncio.to_thread(self.events.delete_event, job.gcal_id, event_id)
            except CalendarMirrorError as exc:
                res.failed += 1
                log.warning(
                    "row-delete-failed event_id=%s error=%s",
                    event_id,
                    exc,
                    extra={"gcal_id": job.gcal_id},
                )
                continue
            if removed:
                res.deleted += 1
