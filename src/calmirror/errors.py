"""Error taxonomy shared by the stores, the remote client and the sync engine.

Propagation policy
- ValidationError: raised before any I/O, surfaced to the caller as-is.
- RemoteRateLimited / RemoteTransient: retryable with bounded backoff.
- RemoteNotFound: success for deletes, hard error for updates.
- RemoteFatal: auth/permission failure; never retried, aborts a sync run.
- LocalStoreError: row-scoped inside a sync run; the row is skipped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .sync.engine import RunSummary

__all__ = [
    "RETRYABLE",
    "CalendarMirrorError",
    "CalendarNotFoundError",
    "LocalStoreError",
    "RemoteConflict",
    "RemoteError",
    "RemoteFatal",
    "RemoteNotFound",
    "RemoteRateLimited",
    "RemoteTransient",
    "SyncAborted",
    "ValidationError",
]


class CalendarMirrorError(Exception):
    """Base class for all calmirror errors."""


class ValidationError(CalendarMirrorError, ValueError):
    """Input rejected before any remote or store call."""


class CalendarNotFoundError(CalendarMirrorError, LookupError):
    """No local Calendar row matches the given gcal_id or calendar_name."""


class LocalStoreError(CalendarMirrorError):
    """A store statement failed (constraint violation, locked database, I/O)."""


class RemoteError(CalendarMirrorError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteRateLimited(RemoteError):
    pass


class RemoteNotFound(RemoteError):
    pass


class RemoteTransient(RemoteError):
    pass


class RemoteFatal(RemoteError):
    pass


class RemoteConflict(RemoteFatal):
    """The resource already exists (HTTP 409), e.g. an event id that was already inserted."""


RETRYABLE: tuple[type[RemoteError], ...] = (RemoteRateLimited, RemoteTransient)


class SyncAborted(CalendarMirrorError):
    """A sync run stopped early because of a RemoteFatal error.

    `summary` holds whatever the run completed before stopping.
    """

    def __init__(self, cause: RemoteFatal, summary: RunSummary) -> None:
        super().__init__(f"sync run aborted: {cause}")
        self.cause = cause
        self.summary = summary
