"""Operator flags on calendar rows. Local only; the provider is never contacted."""

from __future__ import annotations

import logging

from ..models import Calendar
from ..store import CalendarListStore

log = logging.getLogger(__name__)

__all__ = ["CalendarFlagService"]


class CalendarFlagService:
    def __init__(self, calendars: CalendarListStore) -> None:
        self.calendars = calendars

    def set_flags(
        self,
        gcal_id: str,
        *,
        sync: bool | None = None,
        display: bool | None = None,
        edit: bool | None = None,
    ) -> Calendar:
        """Set the named flags and leave the others alone.

        Raises CalendarNotFoundError for an unknown gcal_id. Passing no flags, or
        values the row already has, writes nothing.
        """
        cal = self.calendars.set_flags(gcal_id, sync=sync, display=display, edit=edit)
        log.info(
            "calendar-flags sync=%s display=%s edit=%s",
            cal.sync,
            cal.display,
            cal.edit,
            extra={"gcal_id": gcal_id},
        )
        return cal
