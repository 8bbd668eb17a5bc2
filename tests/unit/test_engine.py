from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import FAST_RETRY, NOW, FakeRemote, gcal_event, no_sleep

from calmirror.errors import (
    LocalStoreError,
    RemoteFatal,
    RemoteNotFound,
    RemoteRateLimited,
    RemoteTransient,
    SyncAborted,
)
from calmirror.models import Event
from calmirror.remote import TimeWindow
from calmirror.sync.engine import (
    CalendarJob,
    JobState,
    RunSummary,
    SyncEngine,
    SyncMode,
    SyncWindows,
)


def _engine(remote, stores, workers: int = 4) -> SyncEngine:
    return SyncEngine(
        remote,
        stores.calendars,
        stores.events,
        retry=FAST_RETRY,
        workers=workers,
        clock=lambda: NOW,
        sleep=no_sleep,
    )


def _cached(gcal_id: str, event_id: str, start, hours: int = 1, **kw) -> Event:
    return Event(
        gcal_id=gcal_id,
        event_id=event_id,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        name=kw.pop("name", "Event"),
        url=kw.pop("url", f"https://calendar.google.com/event?eid={event_id}"),
        **kw,
    )


async def _discover_and_enable(remote: FakeRemote, stores, *gcal_ids: str) -> None:
    await _engine(remote, stores).run()
    for gid in gcal_ids:
        stores.calendars.set_flags(gid, sync=True)


class TestDiscovery:
    async def test_new_calendars_default_to_not_synced(self, fake_remote, stores):
        fake_remote.add_calendar("c1@group.calendar.google.com", "Running", timeZone="Europe/Berlin")
        fake_remote.put_event("c1@group.calendar.google.com", gcal_event("e1", NOW + timedelta(days=1)))

        summary = await _engine(fake_remote, stores).run()

        cal = stores.calendars.get_calendar("c1@group.calendar.google.com")
        assert cal is not None
        assert cal.calendar_name == "Running"
        assert cal.gcal_timezone == "Europe/Berlin"
        assert (cal.sync, cal.display, cal.edit) == (False, False, False)
        assert summary.discovered == 1
        assert summary.calendars == {}
        assert fake_remote.count("iter_events") == 0

    async def test_rediscovery_keeps_operator_flags(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "Running")
        await _discover_and_enable(fake_remote, stores, "c1")
        stores.calendars.set_flags("c1", display=True, edit=True)

        fake_remote.calendar_entries[0]["summary"] = "Running club"
        fake_remote.calendar_entries[0]["description"] = "Tuesdays"
        await _engine(fake_remote, stores).run()

        cal = stores.calendars.get_calendar("c1")
        assert (cal.sync, cal.display, cal.edit) == (True, True, True)
        assert cal.gcal_name == "Running club"
        assert cal.gcal_description == "Tuesdays"
        assert cal.calendar_name == "Running"

    async def test_deleted_calendar_entries_are_ignored(self, fake_remote, stores):
        fake_remote.add_calendar("gone", "Gone", deleted=True)
        fake_remote.add_calendar("c1", "Kept")

        summary = await _engine(fake_remote, stores).run()

        assert stores.calendars.get_calendar("gone") is None
        assert summary.discovered == 1

    async def test_discovery_fatal_aborts_before_any_job(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "A")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.calls.clear()
        fake_remote.fail["list_calendars"] = [RemoteFatal("token revoked", status_code=401)]

        with pytest.raises(SyncAborted) as ei:
            await _engine(fake_remote, stores).run()

        assert isinstance(ei.value.cause, RemoteFatal)
        assert fake_remote.count("iter_events") == 0

    async def test_discovery_failure_falls_back_to_cached_calendars(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "A")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.put_event("c1", gcal_event("e1", NOW + timedelta(days=1)))
        fake_remote.fail["list_calendars"] = [RemoteTransient("503")] * 3

        summary = await _engine(fake_remote, stores).run()

        assert summary.discovery_error is not None
        assert summary.calendars["c1"].state is JobState.DONE
        assert summary.calendars["c1"].added == 1
        assert summary.exit_code() == 2


class TestReconciliation:
    async def test_update_insert_delete_scenario(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        fake_remote.add_calendar("c2", "C2")
        await _discover_and_enable(fake_remote, stores, "c1")

        t_start = NOW + timedelta(days=1)
        earlier = NOW - timedelta(days=1)
        stores.events.upsert_event(
            _cached("c1", "E1", t_start, location_lat=52.5, location_lon=13.4), written_at=earlier
        )
        stores.events.upsert_event(_cached("c1", "E3", NOW + timedelta(days=2)), written_at=earlier)
        stores.events.upsert_event(_cached("c2", "E9", NOW + timedelta(days=3)), written_at=earlier)
        e1_before = stores.events.get_event("c1", "E1")
        e9_before = stores.events.get_event("c2", "E9")

        new_start = t_start + timedelta(hours=2)
        fake_remote.put_event(
            "c1", gcal_event("E1", new_start, updated=NOW + timedelta(minutes=1))
        )
        fake_remote.put_event("c1", gcal_event("E2", NOW + timedelta(days=5), summary="New"))
        fake_remote.put_event("c2", gcal_event("E10", NOW + timedelta(days=4)))

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert res.state is JobState.DONE
        assert (res.added, res.updated, res.deleted, res.failed) == (1, 1, 1, 0)

        e1 = stores.events.get_event("c1", "E1")
        assert e1.start_time == new_start
        assert e1.last_modified > e1_before.last_modified
        assert (e1.location_lat, e1.location_lon) == (52.5, 13.4)
        assert stores.events.get_event("c1", "E2").name == "New"
        assert stores.events.get_event("c1", "E3") is None

        assert "c2" not in summary.calendars
        assert stores.events.get_event("c2", "E9") == e9_before
        assert stores.events.get_event("c2", "E9").last_modified == e9_before.last_modified
        assert stores.events.get_event("c2", "E10") is None

    async def test_second_run_without_remote_change_writes_nothing(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        fake_remote.add_calendar("c2", "C2")
        await _discover_and_enable(fake_remote, stores, "c1", "c2")
        for i in range(5):
            fake_remote.put_event("c1", gcal_event(f"a{i}", NOW + timedelta(days=i + 1)))
            fake_remote.put_event("c2", gcal_event(f"b{i}", NOW + timedelta(days=i + 1)))

        await _engine(fake_remote, stores).run()
        events_mark = stores.events.max_modified()
        calendars_mark = stores.calendars.max_modified()

        summary = await _engine(fake_remote, stores).run()

        agg = summary.aggregate()
        assert (agg["added"], agg["updated"], agg["deleted"]) == (0, 0, 0)
        assert agg["unchanged"] == 10
        assert stores.events.max_modified() == events_mark
        assert stores.calendars.max_modified() == calendars_mark
        assert summary.exit_code() == 0

    async def test_incremental_window_does_not_delete_outside_rows(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        stores.events.upsert_event(_cached("c1", "old", NOW - timedelta(days=30)))

        summary = await _engine(fake_remote, stores).run(SyncMode.INCREMENTAL)
        assert summary.calendars["c1"].deleted == 0
        assert stores.events.get_event("c1", "old") is not None

        summary = await _engine(fake_remote, stores).run(SyncMode.FULL)
        assert summary.calendars["c1"].deleted == 1
        assert stores.events.get_event("c1", "old") is None

    async def test_full_and_incremental_converge(self, fake_remote, tmp_path):
        from calmirror.store import open_stores

        fake_remote.add_calendar("c1", "C1")
        for i in range(4):
            fake_remote.put_event("c1", gcal_event(f"e{i}", NOW + timedelta(days=i + 1)))
        fake_remote.put_event("c1", gcal_event("past", NOW - timedelta(days=40)))

        with open_stores(str(tmp_path / "a.sqlite")) as a, open_stores(str(tmp_path / "b.sqlite")) as b:
            for s in (a, b):
                await _discover_and_enable(fake_remote, s, "c1")
                await _engine(fake_remote, s).run(SyncMode.FULL)

            # changes inside the incremental window
            fake_remote.put_event("c1", gcal_event("e0", NOW + timedelta(days=1), summary="Moved"))
            del fake_remote.events["c1"]["e2"]
            fake_remote.put_event("c1", gcal_event("e9", NOW + timedelta(days=9)))

            await _engine(fake_remote, a).run(SyncMode.INCREMENTAL)
            await _engine(fake_remote, b).run(SyncMode.FULL)

            def state(s):
                return [(e.event_id, e.content()) for e in s.events.list_events_for_calendar("c1")]

            assert state(a) == state(b)
            assert "e2" not in {eid for eid, _ in state(a)}

    async def test_cancelled_and_unnamed_events(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        stores.events.upsert_event(_cached("c1", "gone", NOW + timedelta(days=1)))
        fake_remote.put_event("c1", {**gcal_event("gone", NOW + timedelta(days=1)), "status": "cancelled"})
        fake_remote.put_event("c1", gcal_event("nameless", NOW + timedelta(days=2), summary=None))
        fake_remote.put_event("c1", gcal_event("ok", NOW + timedelta(days=3)))

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert (res.fetched, res.added, res.deleted, res.skipped) == (2, 1, 1, 1)
        assert stores.events.get_event("c1", "gone") is None
        assert stores.events.get_event("c1", "nameless") is None

    async def test_bad_row_is_counted_and_the_rest_applied(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        start = NOW + timedelta(days=1)
        fake_remote.put_event("c1", gcal_event("backwards", start, start - timedelta(hours=1)))
        fake_remote.put_event("c1", gcal_event("fine", start))

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert res.state is JobState.DONE
        assert (res.added, res.failed) == (1, 1)
        assert summary.exit_code() == 2
        for ev in stores.events.list_events_for_calendar("c1"):
            assert ev.start_time <= ev.end_time

    async def test_minimal_listing_fetches_details_only_when_needed(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.minimal = True
        fake_remote.put_event("c1", gcal_event("e1", NOW + timedelta(days=1)))
        fake_remote.put_event("c1", gcal_event("e2", NOW + timedelta(days=2)))

        summary = await _engine(fake_remote, stores).run()
        assert summary.calendars["c1"].added == 2
        assert fake_remote.count("get_event") == 2

        fake_remote.calls.clear()
        summary = await _engine(fake_remote, stores).run()
        assert summary.calendars["c1"].unchanged == 2
        assert fake_remote.count("get_event") == 0

    async def test_failed_detail_fetch_is_a_row_failure(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.minimal = True
        fake_remote.put_event("c1", gcal_event("e1", NOW + timedelta(days=1)))
        fake_remote.put_event("c1", gcal_event("e2", NOW + timedelta(days=2)))
        fake_remote.fail["get_event:c1"] = [RemoteNotFound("raced with a delete", status_code=404)]

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert res.state is JobState.DONE
        assert (res.added, res.failed) == (1, 1)

    async def test_event_moved_past_the_window_is_updated_not_deleted(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.put_event("c1", gcal_event("e1", NOW + timedelta(days=1), summary="Race"))
        await _engine(fake_remote, stores).run(SyncMode.INCREMENTAL)

        moved = NOW + timedelta(days=120)
        fake_remote.put_event(
            "c1", gcal_event("e1", moved, summary="Race", updated=NOW + timedelta(hours=1))
        )
        fake_remote.calls.clear()

        summary = await _engine(fake_remote, stores).run(SyncMode.INCREMENTAL)

        res = summary.calendars["c1"]
        assert (res.updated, res.deleted, res.failed) == (1, 0, 0)
        assert fake_remote.count("get_event") == 1
        cached = stores.events.get_event("c1", "e1")
        assert cached is not None
        assert cached.start_time == moved

    async def test_unconfirmed_missing_row_is_kept(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        stores.events.upsert_event(_cached("c1", "e1", NOW + timedelta(days=1)))
        fake_remote.fail["get_event:c1"] = [RemoteTransient("503", status_code=503)] * 3

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert res.state is JobState.DONE
        assert (res.deleted, res.failed) == (0, 1)
        assert stores.events.get_event("c1", "e1") is not None

    async def test_remote_edit_racing_the_write_is_picked_up_later(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.minimal = True
        fake_remote.put_event(
            "c1", gcal_event("e1", NOW + timedelta(days=1), summary="Old", updated=NOW - timedelta(hours=1))
        )
        await _engine(fake_remote, stores).run()
        assert stores.events.get_event("c1", "e1").last_modified == NOW

        # edited after the listing started, before the previous write finished
        fake_remote.put_event(
            "c1", gcal_event("e1", NOW + timedelta(days=1), summary="New", updated=NOW + timedelta(seconds=1))
        )
        summary = await _engine(fake_remote, stores).run()

        assert summary.calendars["c1"].updated == 1
        assert stores.events.get_event("c1", "e1").name == "New"

    async def test_store_write_failure_is_row_scoped(self, fake_remote, stores, monkeypatch):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.put_event("c1", gcal_event("broken", NOW + timedelta(days=1)))
        fake_remote.put_event("c1", gcal_event("fine", NOW + timedelta(days=2)))
        original = stores.events.upsert_event

        def upsert(event, written_at=None):
            if event.event_id == "broken":
                raise LocalStoreError("disk I/O error")
            return original(event, written_at=written_at)

        monkeypatch.setattr(stores.events, "upsert_event", upsert)

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert res.state is JobState.DONE
        assert (res.added, res.failed) == (1, 1)
        assert summary.exit_code() == 2
        assert stores.events.get_event("c1", "fine") is not None
        assert stores.events.get_event("c1", "broken") is None

    async def test_store_delete_failure_is_row_scoped(self, fake_remote, stores, monkeypatch):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        stores.events.upsert_event(_cached("c1", "gone", NOW + timedelta(days=1)))
        fake_remote.put_event("c1", gcal_event("new", NOW + timedelta(days=2)))

        def delete(gcal_id, event_id):
            raise LocalStoreError("database is locked")

        monkeypatch.setattr(stores.events, "delete_event", delete)

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert res.state is JobState.DONE
        assert (res.added, res.deleted, res.failed) == (1, 0, 1)
        assert stores.events.get_event("c1", "gone") is not None

    async def test_malformed_updated_timestamp_does_not_fail_the_calendar(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.put_event("c1", gcal_event("e1", NOW + timedelta(days=1), updated=None))
        fake_remote.events["c1"]["e1"]["updated"] = "last tuesday"
        fake_remote.put_event("c1", gcal_event("e2", NOW + timedelta(days=2)))

        summary = await _engine(fake_remote, stores).run()

        res = summary.calendars["c1"]
        assert res.state is JobState.DONE
        assert (res.added, res.failed) == (2, 0)


class TestConcurrencyAndFailures:
    async def test_rows_never_cross_calendars(self, fake_remote, stores):
        ids = [f"cal{i}" for i in range(6)]
        for gid in ids:
            fake_remote.add_calendar(gid, gid.upper())
        await _discover_and_enable(fake_remote, stores, *ids)
        for gid in ids:
            for j in range(3):
                # same event ids in every calendar
                fake_remote.put_event(gid, gcal_event(f"shared{j}", NOW + timedelta(days=j + 1), summary=gid))

        summary = await _engine(fake_remote, stores, workers=3).run()

        assert set(summary.calendars) == set(ids)
        for gid in ids:
            rows = stores.events.list_events_for_calendar(gid)
            assert len(rows) == 3
            assert {r.gcal_id for r in rows} == {gid}
            assert {r.name for r in rows} == {gid}

    async def test_each_calendar_is_listed_once_per_run(self, fake_remote, stores):
        ids = [f"cal{i}" for i in range(5)]
        for gid in ids:
            fake_remote.add_calendar(gid, gid)
        await _discover_and_enable(fake_remote, stores, *ids)
        fake_remote.calls.clear()

        await _engine(fake_remote, stores, workers=4).run()

        listed = [c[1] for c in fake_remote.calls if c[0] == "iter_events"]
        assert sorted(listed) == ids

    async def test_rate_limited_calendar_retries_then_recovers(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        await _discover_and_enable(fake_remote, stores, "c1")
        fake_remote.put_event("c1", gcal_event("e1", NOW + timedelta(days=1)))
        fake_remote.fail["iter_events:c1"] = [RemoteRateLimited("429", status_code=429)] * 2

        summary = await _engine(fake_remote, stores).run()

        assert summary.calendars["c1"].state is JobState.DONE
        assert summary.calendars["c1"].added == 1

    async def test_rate_limit_exhaustion_fails_only_that_calendar(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "C1")
        fake_remote.add_calendar("c2", "C2")
        await _discover_and_enable(fake_remote, stores, "c1", "c2")
        fake_remote.put_event("c2", gcal_event("e1", NOW + timedelta(days=1)))
        fake_remote.fail["iter_events:c1"] = [RemoteRateLimited("429", status_code=429)] * 3

        summary = await _engine(fake_remote, stores).run()

        assert summary.calendars["c1"].state is JobState.FAILED
        assert "429" in summary.calendars["c1"].error
        assert summary.calendars["c2"].state is JobState.DONE
        assert summary.failed_calendars == ["c1"]
        assert summary.exit_code() == 2
        assert sum(1 for c in fake_remote.calls if c[:2] == ("iter_events", "c1")) == 3

    async def test_fatal_error_aborts_the_run(self, fake_remote, stores):
        fake_remote.add_calendar("c1", "A")
        fake_remote.add_calendar("c2", "B")
        await _discover_and_enable(fake_remote, stores, "c1", "c2")
        fake_remote.calls.clear()
        fake_remote.fail["iter_events:c1"] = [RemoteFatal("forbidden", status_code=403)]

        with pytest.raises(SyncAborted) as ei:
            await _engine(fake_remote, stores, workers=1).run()

        summary = ei.value.summary
        assert summary.calendars["c1"].state is JobState.FAILED
        assert "c2" not in summary.calendars
        # fatal errors are not retried
        assert fake_remote.count("iter_events") == 1


class TestJobAndSummary:
    def test_job_state_machine(self):
        from calmirror.models import Calendar

        job = CalendarJob(Calendar(gcal_id="c1", calendar_name="C1"), TimeWindow(NOW, NOW))
        assert job.state is JobState.IDLE
        with pytest.raises(RuntimeError):
            job.advance(JobState.APPLYING)
        job.advance(JobState.FETCHING)
        job.fail("boom")
        assert job.state is JobState.FAILED
        assert job.result.error == "boom"
        job.fail("again")
        assert job.result.error == "boom"

    def test_windows(self):
        w = SyncWindows(incremental_past_days=1, incremental_future_days=7, full_past_days=30, full_future_days=60)
        inc = w.window_for("incremental", NOW)
        full = w.window_for(SyncMode.FULL, NOW)
        assert inc.start == NOW - timedelta(days=1)
        assert inc.end == NOW + timedelta(days=7)
        assert full.covers(inc)
        with pytest.raises(ValueError):
            w.window_for("sometimes", NOW)

    def test_empty_summary_is_success(self):
        s = RunSummary(mode="incremental")
        assert s.aggregate()["failed"] == 0
        assert s.exit_code() == 0
