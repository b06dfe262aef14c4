"""Google Calendar provider implementation.

Uses a Google Cloud service account to interact with the Calendar API v3.
The service account JSON key path comes from the ``GOOGLE_SERVICE_ACCOUNT_JSON``
setting.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build

from booking_engine.errors import CalendarProviderUnavailable

from .base import BusyResponse, CalendarEvent, CalendarProvider, TimeSlot

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


class GoogleCalendarProvider(CalendarProvider):
    """CalendarProvider backed by Google Calendar API v3."""

    name = "google"

    def __init__(self, service_account_path: str) -> None:
        if not service_account_path:
            raise ValueError("Google service account JSON path must be provided.")
        self._credentials = Credentials.from_service_account_file(
            service_account_path, scopes=SCOPES
        )
        self._service = build(
            "calendar", "v3", credentials=self._credentials, cache_discovery=False
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(func, *args, **kwargs)
        )

    async def _execute(self, request, what: str, calendar_id: str | None = None) -> Any:
        try:
            return await self._run_in_executor(request.execute)
        except Exception as exc:
            raise CalendarProviderUnavailable(
                f"Google Calendar {what} failed: {exc}", calendar_id=calendar_id
            ) from exc

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    @staticmethod
    def _parse(value: str) -> datetime:
        return datetime.fromisoformat(value).astimezone(timezone.utc)

    def _event_body(self, event: CalendarEvent) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": event.summary,
            "start": {"dateTime": self._to_rfc3339(event.start), "timeZone": event.timezone},
            "end": {"dateTime": self._to_rfc3339(event.end), "timeZone": event.timezone},
        }
        if event.description:
            body["description"] = event.description
        if event.attendees:
            body["attendees"] = [
                {"email": addr} for addr in event.attendees
            ]
        return body

    # ------------------------------------------------------------------
    # CalendarProvider interface
    # ------------------------------------------------------------------

    async def query_busy(
        self,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
    ) -> BusyResponse:
        """Query the Google freebusy API for every calendar in one request.

        Calendars that come back with an ``errors`` entry (not found, no
        access) are reported as ``None`` rather than as free.
        """
        body = {
            "timeMin": self._to_rfc3339(start),
            "timeMax": self._to_rfc3339(end),
            "items": [{"id": cid} for cid in calendar_ids],
        }

        response = await self._execute(
            self._service.freebusy().query(body=body), "freebusy query"
        )

        calendars = response.get("calendars", {})
        result: BusyResponse = {}
        for cid in calendar_ids:
            entry = calendars.get(cid)
            if entry is None or entry.get("errors"):
                logger.warning(
                    "Freebusy returned no data for calendar %s: %s",
                    cid,
                    (entry or {}).get("errors"),
                )
                result[cid] = None
                continue
            result[cid] = [
                TimeSlot(start=self._parse(b["start"]), end=self._parse(b["end"]))
                for b in entry.get("busy", [])
            ]
        return result

    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> Optional[str]:
        """Insert an event into the Google Calendar.

        Sends email invitations to any attendees listed on the event.
        """
        result = await self._execute(
            self._service.events().insert(
                calendarId=calendar_id,
                body=self._event_body(event),
                sendUpdates="all",
            ),
            "event insert",
            calendar_id,
        )
        logger.info("Created event %s on calendar %s", result["id"], calendar_id)
        return result["id"]

    async def update_event(
        self, calendar_id: str, event_id: str, event: CalendarEvent
    ) -> None:
        await self._execute(
            self._service.events().update(
                calendarId=calendar_id,
                eventId=event_id,
                body=self._event_body(event),
                sendUpdates="all",
            ),
            "event update",
            calendar_id,
        )
        logger.info("Updated event %s on calendar %s", event_id, calendar_id)

    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event from Google Calendar."""
        await self._execute(
            self._service.events().delete(calendarId=calendar_id, eventId=event_id),
            "event delete",
            calendar_id,
        )
        logger.info("Deleted event %s on calendar %s", event_id, calendar_id)
        return True
