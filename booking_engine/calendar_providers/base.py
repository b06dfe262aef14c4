"""Abstract base class for calendar providers.

Defines the interface for reading busy time and mirroring bookings as events.
Any calendar backend (Google, Outlook, etc.) implements this ABC.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True, order=True)
class TimeSlot:
    """A half-open ``[start, end)`` interval of time."""

    start: datetime
    end: datetime

    def overlaps(self, other: "TimeSlot") -> bool:
        return self.start < other.end and self.end > other.start

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass
class CalendarEvent:
    """Represents a calendar event to be created or updated."""

    summary: str
    start: datetime
    end: datetime
    description: str = ""
    attendees: list[str] = field(default_factory=list)  # email addresses
    timezone: str = "UTC"


# calendar_id -> busy intervals, or None when that calendar could not answer
BusyResponse = dict[str, Optional[list[TimeSlot]]]


class CalendarProvider(ABC):
    """Abstract calendar backend.

    Read calls are fail-open at the caller; write calls raise
    ``CalendarProviderUnavailable`` and the caller records the failure.
    """

    name: str = "abstract"

    @abstractmethod
    async def query_busy(
        self,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
    ) -> BusyResponse:
        """Return busy intervals per calendar within ``[start, end)``.

        Args:
            calendar_ids: Calendars to query.
            start: Beginning of the window (UTC).
            end: End of the window (UTC).

        Returns:
            A dict with one entry per requested calendar. The value is the list
            of busy intervals, or ``None`` when that calendar reported an error.

        Raises:
            CalendarProviderUnavailable: The provider could not be reached.
        """

    @abstractmethod
    async def insert_event(self, calendar_id: str, event: CalendarEvent) -> Optional[str]:
        """Create an event and return its provider id (``None`` if not mirrored)."""

    @abstractmethod
    async def update_event(
        self, calendar_id: str, event_id: str, event: CalendarEvent
    ) -> None:
        """Replace the time and details of an existing event."""

    @abstractmethod
    async def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """Delete an event. Returns True if it was deleted."""

    async def aclose(self) -> None:
        """Release any held resources."""
