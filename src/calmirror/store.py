"""SQLite cache of the mirrored calendars and events.

Two tables, field names as exposed to the presentation layer:
- calendar_list:  gcal_id (unique) -> calendar_name (unique alias), descriptive fields,
                  operator flags (sync, display, edit), last_modified
- calendar_cache: (gcal_id, event_id) unique -> event fields, last_modified

Design notes
- Every write is one statement. Upserts carry a `WHERE <some column differs>` guard on
  their DO UPDATE branch, so writing unchanged data is a no-op and last_modified only
  advances when something observable changed. Callers learn whether a row was written
  from the returned bool.
- Connections come from a small fixed pool and are checked out per statement; sqlite3
  errors are re-raised as LocalStoreError.
- The stores are synchronous. Async code calls them through asyncio.to_thread.
- Timestamps are UTC ISO 8601 text with microseconds; text order is time order.

Example
  stores = open_stores("/data/calmirror.sqlite")
  stores.calendars.upsert_calendar(Calendar(gcal_id="abc@group.calendar.google.com",
                                            calendar_name="Running"))
  stores.calendars.set_flags("abc@group.calendar.google.com", sync=True)
  for ev in stores.events.list_events("Running"):
      print(ev.name, ev.start_time)
  stores.close()
"""

from __future__ import annotations

import logging
import os
import queue
import sqlite3
import stat
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .errors import CalendarNotFoundError, LocalStoreError
from .models import Calendar, Event, merge_calendar
from .utils.timezones import from_db, to_db, utc_now

log = logging.getLogger(__name__)

__all__ = [
    "CacheStores",
    "CalendarListStore",
    "ConnectionPool",
    "EventCacheStore",
    "open_stores",
]

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS calendar_list (
      gcal_id TEXT PRIMARY KEY,
      calendar_name TEXT NOT NULL UNIQUE,
      gcal_name TEXT,
      gcal_description TEXT,
      gcal_location TEXT,
      gcal_timezone TEXT,
      sync INTEGER NOT NULL DEFAULT 0,
      display INTEGER NOT NULL DEFAULT 0,
      edit INTEGER NOT NULL DEFAULT 0,
      last_modified TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_cache (
      gcal_id TEXT NOT NULL,
      event_id TEXT NOT NULL,
      event_start_time TEXT NOT NULL,
      event_end_time TEXT NOT NULL,
      event_url TEXT,
      event_name TEXT NOT NULL,
      event_description TEXT,
      event_location_name TEXT,
      event_location_lat REAL,
      event_location_lon REAL,
      last_modified TEXT NOT NULL,
      UNIQUE (gcal_id, event_id),
      CHECK (event_start_time <= event_end_time)
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_cache_gcal_start ON calendar_cache(gcal_id, event_start_time);",
    "CREATE INDEX IF NOT EXISTS ix_cache_modified ON calendar_cache(last_modified);",
    "CREATE INDEX IF NOT EXISTS ix_list_modified ON calendar_list(last_modified);",
)

_CALENDAR_COLUMNS = (
    "gcal_id, calendar_name, gcal_name, gcal_description, gcal_location, gcal_timezone, "
    "sync, display, edit, last_modified"
)
_EVENT_COLUMNS = (
    "gcal_id, event_id, event_start_time, event_end_time, event_url, event_name, "
    "event_description, event_location_name, event_location_lat, event_location_lon, "
    "last_modified"
)
_MAX_NAME_ATTEMPTS = 50


class ConnectionPool:
    """Fixed-size pool of sqlite3 connections, one checked out per statement."""

    def __init__(self, db_path: str, size: int = 4, checkout_timeout: float = 30.0) -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        self.db_path = db_path
        self.size = size
        self.checkout_timeout = checkout_timeout
        self._idle: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue(maxsize=size)
        self._all: list[sqlite3.Connection] = []
        try:
            for _ in range(size):
                conn = self._connect(db_path)
                self._all.append(conn)
                self._idle.put(conn)
            self._init_schema()
        except (sqlite3.Error, OSError) as exc:
            self.close()
            raise LocalStoreError(f"cannot open cache database {db_path}: {exc}") from exc

    def __enter__(self) -> ConnectionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _connect(self, db_path: str) -> sqlite3.Connection:
        path = Path(db_path)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            if os.access(path, os.W_OK):
                path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            log.warning("Could not restrict permissions on %s: %s", path, e)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        return conn

    def _init_schema(self) -> None:
        with self.connection() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._idle.get(timeout=self.checkout_timeout)
        except queue.Empty as exc:
            raise LocalStoreError("timed out waiting for a cache connection") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise LocalStoreError(str(exc)) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._idle.put(conn)

    def close(self) -> None:
        for conn in self._all:
            try:
                conn.close()
            except sqlite3.Error:
                log.debug("error closing cache connection", exc_info=True)
        self._all.clear()


def _opt_db(dt: datetime | None) -> str | None:
    return to_db(dt) if dt is not None else None


def _row_to_calendar(row: sqlite3.Row) -> Calendar:
    return Calendar(
        gcal_id=row["gcal_id"],
        calendar_name=row["calendar_name"],
        gcal_name=row["gcal_name"],
        gcal_description=row["gcal_description"],
        gcal_location=row["gcal_location"],
        gcal_timezone=row["gcal_timezone"],
        sync=bool(row["sync"]),
        display=bool(row["display"]),
        edit=bool(row["edit"]),
        last_modified=from_db(row["last_modified"]),
    )


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        gcal_id=row["gcal_id"],
        event_id=row["event_id"],
        start_time=from_db(row["event_start_time"]),
        end_time=from_db(row["event_end_time"]),
        name=row["event_name"],
        url=row["event_url"],
        description=row["event_description"],
        location_name=row["event_location_name"],
        location_lat=row["event_location_lat"],
        location_lon=row["event_location_lon"],
        last_modified=from_db(row["last_modified"]),
    )


# -------------
# Calendars
# -------------


class CalendarListStore:
    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def list_calendars(
        self,
        min_modified: datetime | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Calendar]:
        """List calendars; with `min_modified` only rows written at or after it, oldest first."""
        if min_modified is not None:
            sql = (
                f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list WHERE last_modified >= ? "
                "ORDER BY last_modified, gcal_id LIMIT ? OFFSET ?;"
            )
            params: tuple[object, ...] = (to_db(min_modified), -1 if limit is None else limit, offset)
        else:
            sql = (
                f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list "
                "ORDER BY calendar_name LIMIT ? OFFSET ?;"
            )
            params = (-1 if limit is None else limit, offset)
        with self._pool.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_calendar(r) for r in rows]

    def get_calendar(self, gcal_id: str) -> Calendar | None:
        with self._pool.connection() as conn:
            row = conn.execute(
                f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list WHERE gcal_id = ?;", (gcal_id,)
            ).fetchone()
        return _row_to_calendar(row) if row else None

    def get_by_name(self, calendar_name: str) -> Calendar | None:
        with self._pool.connection() as conn:
            row = conn.execute(
                f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list WHERE calendar_name = ?;",
                (calendar_name,),
            ).fetchone()
        return _row_to_calendar(row) if row else None

    def list_sync_enabled(self) -> list[Calendar]:
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list WHERE sync = 1 ORDER BY calendar_name;"
            ).fetchall()
        return [_row_to_calendar(r) for r in rows]

    def list_displayed(self) -> list[Calendar]:
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"SELECT {_CALENDAR_COLUMNS} FROM calendar_list WHERE display = 1 ORDER BY calendar_name;"
            ).fetchall()
        return [_row_to_calendar(r) for r in rows]

    def upsert_calendar(self, calendar: Calendar) -> bool:
        """Insert a new calendar or refresh the descriptive fields of a known one.

        Operator flags of an existing row are never touched. Returns True if a row was
        written, False when the stored row already matched.
        """
        merged = merge_calendar(self.get_calendar(calendar.gcal_id), calendar)
        if merged is None:
            return False
        now = to_db(utc_now())
        with self._pool.connection() as conn:
            for attempt in range(1, _MAX_NAME_ATTEMPTS + 1):
                name = self._free_name(conn, merged)
                try:
                    cur = conn.execute(
                        f"""
                        INSERT INTO calendar_list({_CALENDAR_COLUMNS})
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(gcal_id) DO UPDATE SET
                            gcal_name = excluded.gcal_name,
                            gcal_description = excluded.gcal_description,
                            gcal_location = excluded.gcal_location,
                            gcal_timezone = excluded.gcal_timezone,
                            last_modified = excluded.last_modified
                        WHERE calendar_list.gcal_name IS NOT excluded.gcal_name
                           OR calendar_list.gcal_description IS NOT excluded.gcal_description
                           OR calendar_list.gcal_location IS NOT excluded.gcal_location
                           OR calendar_list.gcal_timezone IS NOT excluded.gcal_timezone;
                        """,
                        (
                            merged.gcal_id,
                            name,
                            merged.gcal_name,
                            merged.gcal_description,
                            merged.gcal_location,
                            merged.gcal_timezone,
                            int(merged.sync),
                            int(merged.display),
                            int(merged.edit),
                            now,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    # a concurrent writer took the alias between lookup and insert
                    if "calendar_name" in str(exc) and attempt < _MAX_NAME_ATTEMPTS:
                        continue
                    raise
                return cur.rowcount > 0
        return False  # pragma: no cover

    @staticmethod
    def _free_name(conn: sqlite3.Connection, calendar: Calendar) -> str:
        row = conn.execute(
            "SELECT calendar_name FROM calendar_list WHERE gcal_id = ?;", (calendar.gcal_id,)
        ).fetchone()
        if row:
            return str(row["calendar_name"])
        base = calendar.calendar_name.strip() or calendar.gcal_id
        taken = {
            r["calendar_name"]
            for r in conn.execute(
                "SELECT calendar_name FROM calendar_list WHERE calendar_name = ? OR calendar_name LIKE ?;",
                (base, f"{base}_%"),
            )
        }
        if base not in taken:
            return base
        n = 2
        while f"{base}_{n}" in taken:
            n += 1
        return f"{base}_{n}"

    def set_flags(
        self,
        gcal_id: str,
        *,
        sync: bool | None = None,
        display: bool | None = None,
        edit: bool | None = None,
    ) -> Calendar:
        """Update only the named flags; unchanged values do not advance last_modified."""
        s = None if sync is None else int(sync)
        d = None if display is None else int(display)
        e = None if edit is None else int(edit)
        with self._pool.connection() as conn:
            conn.execute(
                """
                UPDATE calendar_list SET
                    sync = COALESCE(?, sync),
                    display = COALESCE(?, display),
                    edit = COALESCE(?, edit),
                    last_modified = ?
                WHERE gcal_id = ?
                  AND (sync IS NOT COALESCE(?, sync)
                       OR display IS NOT COALESCE(?, display)
                       OR edit IS NOT COALESCE(?, edit));
                """,
                (s, d, e, to_db(utc_now()), gcal_id, s, d, e),
            )
        cal = self.get_calendar(gcal_id)
        if cal is None:
            raise CalendarNotFoundError(f"unknown calendar {gcal_id!r}")
        return cal

    def max_modified(self) -> datetime | None:
        with self._pool.connection() as conn:
            row = conn.execute("SELECT MAX(last_modified) AS m FROM calendar_list;").fetchone()
        return from_db(row["m"]) if row and row["m"] else None


# -------------
# Events
# -------------


class EventCacheStore:
    def __init__(self, pool: ConnectionPool, calendars: CalendarListStore) -> None:
        self._pool = pool
        self._calendars = calendars

    def list_events(
        self,
        calendar_name: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        """Events of one calendar overlapping [start, end], ordered by start time."""
        cal = self._calendars.get_by_name(calendar_name)
        if cal is None:
            raise CalendarNotFoundError(f"unknown calendar name {calendar_name!r}")
        return self.list_events_for_calendar(cal.gcal_id, start=start, end=end)

    def list_events_for_calendar(
        self,
        gcal_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Event]:
        # Same bounds as the provider's listing: end after `start`, start before `end`.
        sql = f"SELECT {_EVENT_COLUMNS} FROM calendar_cache WHERE gcal_id = ?"
        params: list[object] = [gcal_id]
        if start is not None:
            sql += " AND event_end_time > ?"
            params.append(to_db(start))
        if end is not None:
            sql += " AND event_start_time < ?"
            params.append(to_db(end))
        sql += " ORDER BY event_start_time, event_id;"
        with self._pool.connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_event(self, gcal_id: str, event_id: str) -> Event | None:
        with self._pool.connection() as conn:
            row = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM calendar_cache WHERE gcal_id = ? AND event_id = ?;",
                (gcal_id, event_id),
            ).fetchone()
        return _row_to_event(row) if row else None

    def upsert_event(self, event: Event, written_at: datetime | None = None) -> bool:
        """Insert or update one event; returns False when the stored row already matched.

        `written_at` stamps last_modified on a real change (default: now). The sync engine
        passes the time its listing started so a remote edit racing the write stays newer.
        """
        with self._pool.connection() as conn:
            cur = conn.execute(
                f"""
                INSERT INTO calendar_cache({_EVENT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(gcal_id, event_id) DO UPDATE SET
                    event_start_time = excluded.event_start_time,
                    event_end_time = excluded.event_end_time,
                    event_url = excluded.event_url,
                    event_name = excluded.event_name,
                    event_description = excluded.event_description,
                    event_location_name = excluded.event_location_name,
                    event_location_lat = excluded.event_location_lat,
                    event_location_lon = excluded.event_location_lon,
                    last_modified = excluded.last_modified
                WHERE calendar_cache.event_start_time IS NOT excluded.event_start_time
                   OR calendar_cache.event_end_time IS NOT excluded.event_end_time
                   OR calendar_cache.event_url IS NOT excluded.event_url
                   OR calendar_cache.event_name IS NOT excluded.event_name
                   OR calendar_cache.event_description IS NOT excluded.event_description
                   OR calendar_cache.event_location_name IS NOT excluded.event_location_name
                   OR calendar_cache.event_location_lat IS NOT excluded.event_location_lat
                   OR calendar_cache.event_location_lon IS NOT excluded.event_location_lon;
                """,
                (
                    event.gcal_id,
                    event.event_id,
                    to_db(event.start_time),
                    to_db(event.end_time),
                    event.url,
                    event.name,
                    event.description,
                    event.location_name,
                    event.location_lat,
                    event.location_lon,
                    to_db(written_at or utc_now()),
                ),
            )
            return cur.rowcount > 0

    def delete_event(self, gcal_id: str, event_id: str) -> bool:
        """Remove one cached event; deleting an absent row is a no-op returning False."""
        with self._pool.connection() as conn:
            cur = conn.execute(
                "DELETE FROM calendar_cache WHERE gcal_id = ? AND event_id = ?;",
                (gcal_id, event_id),
            )
            return cur.rowcount > 0

    def list_modified_since(
        self, min_modified: datetime, offset: int = 0, limit: int | None = None
    ) -> list[Event]:
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"SELECT {_EVENT_COLUMNS} FROM calendar_cache WHERE last_modified >= ? "
                "ORDER BY last_modified, gcal_id, event_id LIMIT ? OFFSET ?;",
                (to_db(min_modified), -1 if limit is None else limit, offset),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def list_agenda(self, start: datetime, end: datetime) -> list[Event]:
        """Events of displayed calendars overlapping the window, across calendars."""
        with self._pool.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {", ".join("c." + col.strip() for col in _EVENT_COLUMNS.split(","))}
                FROM calendar_cache c JOIN calendar_list l ON l.gcal_id = c.gcal_id
                WHERE l.display = 1 AND c.event_end_time > ? AND c.event_start_time < ?
                ORDER BY c.event_start_time, c.gcal_id, c.event_id;
                """,
                (to_db(start), to_db(end)),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def max_modified(self) -> datetime | None:
        with self._pool.connection() as conn:
            row = conn.execute("SELECT MAX(last_modified) AS m FROM calendar_cache;").fetchone()
        return from_db(row["m"]) if row and row["m"] else None


@dataclass
class CacheStores:
    pool: ConnectionPool
    calendars: CalendarListStore
    events: EventCacheStore

    def close(self) -> None:
        self.pool.close()

    def __enter__(self) -> CacheStores:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def open_stores(db_path: str, pool_size: int = 4) -> CacheStores:
    pool = ConnectionPool(db_path, size=pool_size)
    calendars = CalendarListStore(pool)
    return CacheStores(pool=pool, calendars=calendars, events=EventCacheStore(pool, calendars))
