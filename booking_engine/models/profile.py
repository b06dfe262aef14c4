"""Pydantic models for host scheduling configuration."""

from __future__ import annotations

import re
from datetime import time
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, field_validator, model_validator

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

MIN_DURATION_MIN = 5
MAX_DURATION_MIN = 24 * 60

_CLOCK_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$|^24:00$")


def parse_clock(value: str) -> tuple[int, int]:
    """Split ``HH:MM`` into (hour, minute). ``24:00`` is end of day."""
    hour, minute = value.split(":")
    return int(hour), int(minute)


class TimeBlock(BaseModel):
    """One open block of a working day, in host-local wall-clock time."""

    start: str  # HH:MM
    end: str  # HH:MM, "24:00" allowed

    @field_validator("start", "end")
    @classmethod
    def _check_clock(cls, value: str) -> str:
        if not _CLOCK_PATTERN.match(value):
            raise ValueError(f"Invalid clock time {value!r}, expected HH:MM")
        return value

    @model_validator(mode="after")
    def _check_order(self) -> "TimeBlock":
        if self.start == "24:00":
            raise ValueError("A block cannot start at 24:00")
        if parse_clock(self.end) <= parse_clock(self.start):
            raise ValueError(f"Block end {self.end} must be after start {self.start}")
        return self

    @property
    def start_time(self) -> time:
        return time(*parse_clock(self.start))


WorkingHours = dict[str, list[TimeBlock]]


def _check_duration_range(value: Optional[int]) -> Optional[int]:
    if value is not None and not MIN_DURATION_MIN <= value <= MAX_DURATION_MIN:
        raise ValueError(
            f"duration must be between {MIN_DURATION_MIN} and {MAX_DURATION_MIN} minutes"
        )
    return value


def _check_not_negative(value: Optional[int]) -> Optional[int]:
    if value is not None and value < 0:
        raise ValueError("must not be negative")
    return value


def _check_working_hours(value: Optional[WorkingHours]) -> Optional[WorkingHours]:
    if value is None:
        return value
    unknown = set(value) - set(WEEKDAYS)
    if unknown:
        raise ValueError(f"Unknown weekday keys: {sorted(unknown)}")
    return value


class ReminderPolicy(BaseModel):
    enabled_24h: bool = True
    enabled_1h: bool = True


class SchedulingProfile(BaseModel):
    """A host's scheduling configuration. Mutated only by the host."""

    host_id: str
    handle: str
    timezone: str = "UTC"
    working_hours: WorkingHours = {}
    default_duration_min: int = 30
    buffer_min: int = 0
    min_notice_min: int = 120
    calendar_ids: list[str] = []
    reminders: ReminderPolicy = ReminderPolicy()
    requires_confirmation: bool = False

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {value!r}") from None
        return value

    @field_validator("working_hours")
    @classmethod
    def _check_hours(cls, value: WorkingHours) -> WorkingHours:
        return _check_working_hours(value)

    @field_validator("default_duration_min")
    @classmethod
    def _check_duration(cls, value: int) -> int:
        return _check_duration_range(value)

    @field_validator("buffer_min", "min_notice_min")
    @classmethod
    def _check_non_negative(cls, value: int) -> int:
        return _check_not_negative(value)


class EventType(BaseModel):
    """Named override of a profile's scheduling fields for one booking link.

    Unset (``None``) fields fall back to the profile.
    """

    id: str
    host_id: str
    slug: str
    name: str
    duration_min: Optional[int] = None
    buffer_min: Optional[int] = None
    min_notice_min: Optional[int] = None
    working_hours: Optional[WorkingHours] = None
    requires_confirmation: Optional[bool] = None
    is_active: bool = True

    @field_validator("working_hours")
    @classmethod
    def _check_hours(cls, value: Optional[WorkingHours]) -> Optional[WorkingHours]:
        return _check_working_hours(value)

    @field_validator("duration_min")
    @classmethod
    def _check_duration(cls, value: Optional[int]) -> Optional[int]:
        return _check_duration_range(value)

    @field_validator("buffer_min", "min_notice_min")
    @classmethod
    def _check_non_negative(cls, value: Optional[int]) -> Optional[int]:
        return _check_not_negative(value)


class EffectiveSchedule(BaseModel):
    """Profile fields with event-type overrides applied field-by-field."""

    host_id: str
    event_type_id: Optional[str] = None
    timezone: str
    working_hours: WorkingHours
    duration_min: int
    buffer_min: int
    min_notice_min: int
    calendar_ids: list[str]
    reminders: ReminderPolicy
    requires_confirmation: bool

    @classmethod
    def resolve(
        cls, profile: SchedulingProfile, event_type: Optional[EventType] = None
    ) -> "EffectiveSchedule":
        def pick(override, fallback):
            return fallback if override is None else override

        et = event_type
        return cls(
            host_id=profile.host_id,
            event_type_id=et.id if et else None,
            timezone=profile.timezone,
            working_hours=pick(et.working_hours if et else None, profile.working_hours),
            duration_min=pick(et.duration_min if et else None, profile.default_duration_min),
            buffer_min=pick(et.buffer_min if et else None, profile.buffer_min),
            min_notice_min=pick(et.min_notice_min if et else None, profile.min_notice_min),
            calendar_ids=list(profile.calendar_ids),
            reminders=profile.reminders,
            requires_confirmation=pick(
                et.requires_confirmation if et else None, profile.requires_confirmation
            ),
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)
