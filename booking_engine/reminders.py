"""Reminder schedule for bookings: 24 hours and 1 hour before start."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from booking_engine.models import Booking, Reminder, ReminderPolicy

OFFSETS = {"24h": timedelta(hours=24), "1h": timedelta(hours=1)}


def _enabled_types(policy: ReminderPolicy) -> list[str]:
    types = []
    if policy.enabled_24h:
        types.append("24h")
    if policy.enabled_1h:
        types.append("1h")
    return types


def calculate_reminders(start: datetime, policy: ReminderPolicy, now: datetime) -> list[Reminder]:
    """Reminders for a new booking. Only those still in the future are kept."""
    return [
        Reminder(id=uuid.uuid4().hex, type=kind, send_at=start - OFFSETS[kind])
        for kind in _enabled_types(policy)
        if start - OFFSETS[kind] > now
    ]


def recompute_reminders(
    existing: list[Reminder],
    new_start: datetime,
    policy: ReminderPolicy,
    now: datetime,
) -> list[Reminder]:
    """Keep reminders already sent, reschedule the rest around ``new_start``."""
    sent = [r for r in existing if r.sent_at is not None]
    sent_types = {r.type for r in sent}
    pending = [
        r for r in calculate_reminders(new_start, policy, now)
        if r.type not in sent_types
    ]
    return sent + pending


def due_reminders(booking: Booking, now: datetime) -> list[Reminder]:
    if not booking.is_active:
        return []
    return [r for r in booking.reminders if r.sent_at is None and r.send_at <= now]


def mark_reminder_sent(reminders: list[Reminder], reminder_id: str, now: datetime) -> list[Reminder]:
    return [
        r.model_copy(update={"sent_at": now}) if r.id == reminder_id else r
        for r in reminders
    ]
