"""Commit-time slot checks.

Availability is read without locks, so by the time a guest submits, the slot
may be gone. ``ConflictGuard`` re-checks the exact interval against the working
schedule and current busy time just before the write, and the store's unique
index catches the race that remains between that check and the insert.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, Optional

from booking_engine.availability import fits_schedule
from booking_engine.calendar_providers.base import TimeSlot
from booking_engine.errors import SlotConflict
from booking_engine.models import EffectiveSchedule
from booking_engine.store import DuplicateSlotError

if TYPE_CHECKING:
    from booking_engine.availability import AvailabilityService

log = logging.getLogger("booking_engine.conflicts")


class ConflictGuard:
    def __init__(
        self,
        availability: "AvailabilityService",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._availability = availability
        self._clock = clock

    async def ensure_free(
        self,
        schedule: EffectiveSchedule,
        start: datetime,
        end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
        ignore: Iterable[TimeSlot] = (),
    ) -> list[str]:
        """Raise ``SlotConflict`` unless ``[start, end)`` is bookable right now.

        Returns the calendars that could not be consulted; their busy time was
        treated as free.
        """
        if not fits_schedule(schedule, start, end, now=self._clock()):
            raise SlotConflict("This time is outside the host's bookable hours")

        busy = await self._availability.busy_for(
            schedule, start, end, exclude_booking_id=exclude_booking_id, ignore=ignore
        )
        if any(start < b.end and end > b.start for b in busy.intervals):
            log.info(
                "Commit-time conflict for host %s at %s", schedule.host_id, start.isoformat()
            )
            raise SlotConflict()
        return busy.unknown

    @staticmethod
    @contextmanager
    def first_writer_wins() -> Iterator[None]:
        """Report a lost insert race on the store's unique index as ``SlotConflict``."""
        try:
            yield
        except DuplicateSlotError as exc:
            log.info("Lost booking race: %s", exc)
            raise SlotConflict() from exc
