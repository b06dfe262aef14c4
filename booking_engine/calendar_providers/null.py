"""No-op calendar provider for hosts without an external calendar."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .base import BusyResponse, CalendarEvent, CalendarProvider


class NullCalendarProvider(CalendarProvider):
    """Reports every calendar as free and mirrors nothing."""

    name = "none"

    async def query_busy(
        self,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
    ) -> BusyResponse:
        return {cid: [] for cid in calendar_ids}

    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> Optional[str]:
        return None

    async def update_event(
        self, calendar_id: str, event_id: str, event: CalendarEvent
    ) -> None:
        return None

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        return True
