"""Pydantic models for bookings and their lifecycle records."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class BookingStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELED = "canceled"

    @property
    def is_active(self) -> bool:
        return self is not BookingStatus.CANCELED


class BookingSource(str, Enum):
    DIRECT = "direct"
    PUBLIC_LINK = "public-link"
    AUTOMATED_AGENT = "automated-agent"


class GuestContact(BaseModel):
    name: str
    email: str


class RescheduleEntry(BaseModel):
    """A prior interval of a rescheduled booking."""

    start: datetime
    end: datetime
    changed_at: datetime


class ExternalEvent(BaseModel):
    """Pointer to the event mirrored onto the host's external calendar."""

    calendar_id: str
    event_id: str
    deleted: bool = False


class Reminder(BaseModel):
    id: str
    type: str  # "24h" or "1h"
    send_at: datetime
    sent_at: Optional[datetime] = None


class Booking(BaseModel):
    """A committed booking. Never hard-deleted; cancellation is a status."""

    id: str
    host_id: str
    event_type_id: Optional[str] = None
    guest: GuestContact
    start: datetime  # UTC
    end: datetime  # UTC
    timezone: str = "UTC"  # guest display timezone
    status: BookingStatus = BookingStatus.CONFIRMED
    source: BookingSource = BookingSource.PUBLIC_LINK
    title: str = ""
    notes: str = ""
    reschedule_count: int = 0
    reschedule_history: list[RescheduleEntry] = []
    consumed_nonces: list[str] = []
    external_event: Optional[ExternalEvent] = None
    mirror_error: Optional[str] = None
    reminders: list[Reminder] = []
    version: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    def nonce_consumed(self, nonce: str) -> bool:
        return nonce in self.consumed_nonces


class BookingReceipt(BaseModel):
    """A booking plus the action tokens handed to the guest."""

    booking: Booking
    cancel_token: Optional[str] = None
    reschedule_token: Optional[str] = None

    @property
    def tokens(self) -> dict[str, str]:
        tokens = {}
        if self.cancel_token:
            tokens["cancel"] = self.cancel_token
        if self.reschedule_token:
            tokens["reschedule"] = self.reschedule_token
        return tokens
