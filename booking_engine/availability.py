"""Availability calculation: candidate slots, busy subtraction, free list.

Candidate slots are generated on host-local wall-clock time, one working block
at a time, and converted to UTC only when a slot is emitted. A block therefore
never drifts across a daylight-saving change; wall-clock times that do not
exist on the day (spring-forward gap) are skipped, and wall-clock times that
occur twice (fall-back) yield a slot for each occurrence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booking_engine.busy import BusyResolver, BusyResult, merge_intervals
from booking_engine.calendar_providers.base import TimeSlot
from booking_engine.errors import InputValidationError
from booking_engine.models.profile import (
    MAX_DURATION_MIN,
    MIN_DURATION_MIN,
    WEEKDAYS,
    EffectiveSchedule,
    TimeBlock,
    parse_clock,
)

if TYPE_CHECKING:
    from booking_engine.hosts import HostDirectory
    from booking_engine.store import Store

log = logging.getLogger("booking_engine.availability")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _block_bounds(day: date, block: TimeBlock) -> tuple[datetime, datetime]:
    """Naive local start/end of a block; ``24:00`` ends at next midnight."""
    start = datetime.combine(day, block.start_time)
    hour, minute = parse_clock(block.end)
    if hour == 24:
        end = datetime.combine(day + timedelta(days=1), time(0, 0))
    else:
        end = datetime.combine(day, time(hour, minute))
    return start, end


def _local_to_utc(naive: datetime, tz: ZoneInfo) -> list[datetime]:
    """Every UTC instant showing wall time ``naive`` in ``tz``.

    Empty inside a spring-forward gap, two instants in the repeated fall-back
    hour, one otherwise.
    """
    instants: list[datetime] = []
    for fold in (0, 1):
        utc = naive.replace(tzinfo=tz, fold=fold).astimezone(timezone.utc)
        if utc.astimezone(tz).replace(tzinfo=None) == naive and utc not in instants:
            instants.append(utc)
    return instants


def generate_candidate_slots(
    schedule: EffectiveSchedule,
    day: date,
    *,
    now: datetime,
    duration_min: Optional[int] = None,
) -> list[TimeSlot]:
    """Slice the day's working blocks into fixed-length UTC slots.

    Within each block a cursor starts at the block start, emits a
    ``duration`` slot and advances by ``duration + buffer`` while the slot end
    still fits the block. Slots starting before ``now + min_notice`` are dropped.
    A slot always lasts exactly ``duration`` of real time, even across a
    daylight-saving change.
    """
    duration = timedelta(minutes=duration_min or schedule.duration_min)
    step = duration + timedelta(minutes=max(0, schedule.buffer_min))
    if step <= timedelta(0):
        raise ValueError(f"slot duration must be positive, got {duration}")
    earliest = now + timedelta(minutes=schedule.min_notice_min)
    tz = schedule.tz

    blocks = schedule.working_hours.get(WEEKDAYS[day.weekday()], [])
    slots: list[TimeSlot] = []
    for block in blocks:
        block_start, block_end = _block_bounds(day, block)
        # same instant fits_schedule checks against
        end_limit = block_end.replace(tzinfo=tz)
        cursor = block_start
        while cursor + duration <= block_end:
            for start in _local_to_utc(cursor, tz):
                if start >= earliest and start + duration <= end_limit:
                    slots.append(TimeSlot(start=start, end=start + duration))
            cursor += step

    # overlapping blocks could repeat a start
    return sorted(set(slots))


def fits_schedule(
    schedule: EffectiveSchedule,
    start: datetime,
    end: datetime,
    *,
    now: datetime,
) -> bool:
    """Whether ``[start, end)`` lies inside one working block and honours min-notice."""
    if start < now + timedelta(minutes=schedule.min_notice_min):
        return False
    tz = schedule.tz
    day = start.astimezone(tz).date()
    for block in schedule.working_hours.get(WEEKDAYS[day.weekday()], []):
        block_start, block_end = _block_bounds(day, block)
        if (
            block_start.replace(tzinfo=tz) <= start
            and end <= block_end.replace(tzinfo=tz)
        ):
            return True
    return False


def filter_free_slots(
    slots: Iterable[TimeSlot], busy: Iterable[TimeSlot]
) -> list[TimeSlot]:
    """Drop every slot that overlaps a busy interval (half-open overlap)."""
    busy = list(busy)
    return sorted(
        slot for slot in slots
        if not any(slot.start < b.end and slot.end > b.start for b in busy)
    )


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InputValidationError(f"Unknown timezone {name!r}") from None


@dataclass
class AvailableSlot:
    start: datetime  # UTC
    end: datetime  # UTC
    local_start: datetime  # guest display timezone

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "localStart": self.local_start.isoformat(),
        }


@dataclass
class AvailabilityResult:
    slots: list[AvailableSlot] = field(default_factory=list)
    unknown_calendars: list[str] = field(default_factory=list)


class AvailabilityService:
    """Read path: candidate slots minus external busy time minus bookings."""

    def __init__(
        self,
        directory: "HostDirectory",
        resolver: BusyResolver,
        store: "Store",
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._directory = directory
        self._resolver = resolver
        self._store = store
        self._clock = clock

    async def busy_for(
        self,
        schedule: EffectiveSchedule,
        start: datetime,
        end: datetime,
        *,
        exclude_booking_id: Optional[str] = None,
        ignore: Iterable[TimeSlot] = (),
    ) -> BusyResult:
        """External busy time plus the host's other active bookings."""
        external = await self._resolver.resolve(
            schedule.calendar_ids, start, end, ignore=ignore
        )
        internal = await self._store.list_active_intervals(
            schedule.host_id, start, end, exclude_booking_id=exclude_booking_id
        )
        return BusyResult(
            intervals=merge_intervals([*external.intervals, *internal]),
            unknown=external.unknown,
        )

    async def get_slots(
        self,
        host_id: str,
        day: date,
        *,
        timezone_name: str = "UTC",
        duration_min: Optional[int] = None,
        event_type: Optional[str] = None,
    ) -> AvailabilityResult:
        guest_tz = resolve_timezone(timezone_name)
        if duration_min is not None and not MIN_DURATION_MIN <= duration_min <= MAX_DURATION_MIN:
            raise InputValidationError(
                f"duration must be between {MIN_DURATION_MIN} and {MAX_DURATION_MIN} minutes"
            )

        schedule = await self._directory.effective_schedule(host_id, event_type)
        candidates = generate_candidate_slots(
            schedule, day, now=self._clock(), duration_min=duration_min
        )
        if not candidates:
            return AvailabilityResult()

        busy = await self.busy_for(schedule, candidates[0].start, candidates[-1].end)
        free = filter_free_slots(candidates, busy.intervals)
        log.debug(
            "Availability host=%s day=%s candidates=%d free=%d unknown=%s",
            host_id, day, len(candidates), len(free), busy.unknown,
        )
        return AvailabilityResult(
            slots=[
                AvailableSlot(start=s.start, end=s.end, local_start=s.start.astimezone(guest_tz))
                for s in free
            ],
            unknown_calendars=busy.unknown,
        )
