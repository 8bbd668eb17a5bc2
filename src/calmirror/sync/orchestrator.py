"""Run orchestration: single-run lock, dependency wiring and exit codes.

Exit codes
- 0: success
- 2: partial (failed rows, failed calendars or discovery left behind)
- 3: fatal (lock held, configuration/auth failure, run aborted)
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from types import TracebackType

from ..config import AppConfig
from ..errors import SyncAborted
from ..google.auth import CredentialsTokenProvider, get_credentials
from ..google.calendar import GoogleCalendarClient
from ..remote import RemoteCalendarClient
from ..services.flags import CalendarFlagService
from ..services.mutations import EventMutationService
from ..store import CacheStores, open_stores
from .engine import RunSummary, SyncEngine, SyncMode, SyncWindows

log = logging.getLogger(__name__)

__all__ = ["FileLock", "LockHeld", "Orchestrator", "Session"]

RemoteFactory = Callable[[AppConfig], RemoteCalendarClient]


class LockHeld(RuntimeError):
    pass


class FileLock:
    """Non-blocking PID file lock (O_CREAT|O_EXCL).

    A lock file naming a PID that no longer runs is stale and gets replaced once.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._fd: int | None = None

    def _create(self) -> None:
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.write(fd, str(os.getpid()).encode("utf-8"))
        os.fsync(fd)
        self._fd = fd

    def acquire(self) -> None:
        try:
            self._create()
            return
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise
            if not self._is_stale():
                raise LockHeld(f"another run holds the lock at {self.path}") from e
        log.warning("removing stale lock file at %s", self.path)
        try:
            os.unlink(self.path)
            self._create()
        except OSError as e:
            raise LockHeld(f"lost the race for the lock at {self.path}") from e

    def _is_stale(self) -> bool:
        try:
            with open(self.path, encoding="utf-8") as fh:
                raw = fh.read().strip()
        except (FileNotFoundError, PermissionError):
            return True
        if not raw.isdigit():
            return True
        try:
            os.kill(int(raw), 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            # exists, owned by someone else
            return False
        return False

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                log.debug("lock fd already closed")
            self._fd = None
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


@dataclass
class Session:
    stores: CacheStores
    remote: RemoteCalendarClient
    engine: SyncEngine
    mutations: EventMutationService
    flags: CalendarFlagService


def _google_remote(cfg: AppConfig) -> RemoteCalendarClient:
    creds = get_credentials(cfg.google)
    tokens = CredentialsTokenProvider(creds, token_store=cfg.google.token_store)
    return GoogleCalendarClient(
        tokens,
        base_url=cfg.google.api_base_url,
        max_concurrent_requests=cfg.google.max_concurrent_requests,
        page_size=cfg.google.page_size,
        minimal_listing=cfg.google.minimal_listing,
        timeout=cfg.google.request_timeout_sec,
    )


class Orchestrator:
    def __init__(self, cfg: AppConfig, *, remote_factory: RemoteFactory | None = None) -> None:
        self.cfg = cfg
        self._remote_factory = remote_factory or _google_remote

    def open_stores(self) -> CacheStores:
        return open_stores(self.cfg.store.db_path, pool_size=self.cfg.store.pool_size)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """Stores, remote client and services wired from config; closed on exit."""
        sync_cfg = self.cfg.sync
        retry = sync_cfg.retry_config()
        stores = self.open_stores()
        try:
            remote = self._remote_factory(self.cfg)
        except BaseException:
            stores.close()
            raise
        try:
            yield Session(
                stores=stores,
                remote=remote,
                engine=SyncEngine(
                    remote,
                    stores.calendars,
                    stores.events,
                    retry=retry,
                    workers=sync_cfg.workers,
                    windows=SyncWindows.from_config(sync_cfg),
                    default_tz=sync_cfg.default_timezone,
                ),
                mutations=EventMutationService(
                    remote,
                    stores.calendars,
                    stores.events,
                    retry=retry,
                    default_tz=sync_cfg.default_timezone,
                ),
                flags=CalendarFlagService(stores.calendars),
            )
        finally:
            try:
                await remote.aclose()
            finally:
                stores.close()

    async def run_async(self, mode: SyncMode | str = SyncMode.INCREMENTAL) -> tuple[int, RunSummary]:
        mode = SyncMode(mode)
        lock = FileLock(self.cfg.runtime.lock_path)
        log.info("acquiring-lock %s", lock.path)
        try:
            lock.acquire()
        except (LockHeld, OSError) as e:
            log.error("lock-failed %s", e)
            return 3, RunSummary(mode=mode.value)

        summary = RunSummary(mode=mode.value)
        try:
            async with self.session() as s:
                summary = await s.engine.run(mode)
            return summary.exit_code(), summary
        except SyncAborted as e:
            log.error("sync-aborted %s", e.cause)
            return 3, e.summary
        except Exception:
            log.exception("sync-run-fatal")
            return 3, summary
        finally:
            lock.release()

    def run(self, mode: SyncMode | str = SyncMode.INCREMENTAL) -> tuple[int, RunSummary]:
        """Run one sync pass; returns exit code and summary."""
        return asyncio.run(self.run_async(mode))
