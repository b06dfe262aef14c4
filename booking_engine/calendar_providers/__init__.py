"""Calendar provider abstractions and implementations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .base import BusyResponse, CalendarEvent, CalendarProvider, TimeSlot
from .null import NullCalendarProvider

if TYPE_CHECKING:
    from booking_engine.config import Settings

log = logging.getLogger("booking_engine.calendar_providers")

__all__ = [
    "BusyResponse",
    "CalendarEvent",
    "CalendarProvider",
    "NullCalendarProvider",
    "TimeSlot",
    "get_calendar_provider",
]


def get_calendar_provider(settings: "Settings") -> CalendarProvider:
    """Build the provider named by ``settings.calendar_provider``.

    Called once at startup; the Google client is imported lazily so hosts
    running without it do not need the API libraries loaded.
    """
    name = settings.calendar_provider
    if name == "google":
        from .google import GoogleCalendarProvider

        log.info("Using Google Calendar provider")
        return GoogleCalendarProvider(settings.google_service_account_json)
    if name == "none":
        log.info("No external calendar provider configured")
        return NullCalendarProvider()
    raise ValueError(f"Unknown calendar provider: {name!r}")
