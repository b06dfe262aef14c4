"""Data models for the booking engine."""

from .booking import (
    Booking,
    BookingReceipt,
    BookingSource,
    BookingStatus,
    ExternalEvent,
    GuestContact,
    Reminder,
    RescheduleEntry,
)
from .profile import (
    WEEKDAYS,
    EffectiveSchedule,
    EventType,
    ReminderPolicy,
    SchedulingProfile,
    TimeBlock,
)

__all__ = [
    "Booking",
    "BookingReceipt",
    "BookingSource",
    "BookingStatus",
    "EffectiveSchedule",
    "EventType",
    "ExternalEvent",
    "GuestContact",
    "Reminder",
    "ReminderPolicy",
    "RescheduleEntry",
    "SchedulingProfile",
    "TimeBlock",
    "WEEKDAYS",
]
