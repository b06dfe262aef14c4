"""Shared fixtures: fake calendar, recording notifier, SQLite-backed engine."""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from booking_engine.calendar_providers.base import CalendarEvent, CalendarProvider, TimeSlot
from booking_engine.config import Settings
from booking_engine.errors import CalendarProviderUnavailable
from booking_engine.models import Booking, GuestContact
from booking_engine.notifications import NotificationDispatcher
from booking_engine.runtime import Engine
from booking_engine.store import Store

# Monday
FIXED_NOW = datetime(2026, 3, 16, 8, 0, tzinfo=timezone.utc)
HOST_ID = "host-1"

WEEKDAY_HOURS = {
    day: [{"start": "09:00", "end": "17:00"}]
    for day in ("mon", "tue", "wed", "thu", "fri")
}


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_booking(booking_id="b1", start=None, host_id=HOST_ID, **kwargs) -> Booking:
    start = start or utc(2026, 3, 17, 10, 0)
    return Booking(
        id=booking_id,
        host_id=host_id,
        guest=GuestContact(name="Grace", email="grace@example.com"),
        start=start,
        end=start + timedelta(minutes=30),
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
        **kwargs,
    )


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeCalendarProvider(CalendarProvider):
    """In-memory calendar with switchable failures."""

    name = "fake"

    def __init__(self) -> None:
        self.busy: dict[str, list[TimeSlot]] = {}
        self.unanswered: set[str] = set()
        self.failing_inserts: set[str] = set()
        self.down = False
        # raise something other than CalendarProviderUnavailable
        self.crash = False
        self.delay = 0.0
        self.events: dict[str, tuple[str, CalendarEvent]] = {}
        self.inserted: list[tuple[str, str]] = []
        self.updated: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str]] = []
        self._next_id = 0

    def _maybe_crash(self) -> None:
        if self.crash:
            raise RuntimeError("unexpected response shape")

    async def query_busy(self, calendar_ids, start, end):
        if self.delay:
            await asyncio.sleep(self.delay)
        self._maybe_crash()
        if self.down:
            raise CalendarProviderUnavailable("calendar backend down")
        return {
            cid: None if cid in self.unanswered else [
                b for b in self.busy.get(cid, []) if b.start < end and b.end > start
            ]
            for cid in calendar_ids
        }

    async def insert_event(self, calendar_id, event):
        self._maybe_crash()
        if self.down or calendar_id in self.failing_inserts:
            raise CalendarProviderUnavailable("insert refused", calendar_id=calendar_id)
        self._next_id += 1
        event_id = f"evt-{self._next_id}"
        self.events[event_id] = (calendar_id, event)
        self.inserted.append((calendar_id, event_id))
        return event_id

    async def update_event(self, calendar_id, event_id, event):
        self._maybe_crash()
        if self.down:
            raise CalendarProviderUnavailable("update refused", calendar_id=calendar_id)
        self.events[event_id] = (calendar_id, event)
        self.updated.append((calendar_id, event_id))

    async def delete_event(self, calendar_id, event_id):
        self._maybe_crash()
        if self.down:
            raise CalendarProviderUnavailable("delete refused", calendar_id=calendar_id)
        self.events.pop(event_id, None)
        self.deleted.append((calendar_id, event_id))
        return True


class RecordingNotifier(NotificationDispatcher):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = False

    def _record(self, kind, booking, payload=None):
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append((kind, booking.id, payload or {}))

    async def send_created(self, booking, tokens):
        self._record("created", booking, tokens)

    async def send_rescheduled(self, booking, tokens):
        self._record("rescheduled", booking, tokens)

    async def send_canceled(self, booking):
        self._record("canceled", booking)

    async def send_reminder(self, booking, reminder):
        self._record("reminder", booking, {"type": reminder.type})

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database_path": str(tmp_path / "bookings.db"),
        "token_secret": "test-secret-" + "x" * 32,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeCalendarProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def store(tmp_path):
    store = Store(str(tmp_path / "store.db"))
    store.initialize()
    return store


@pytest.fixture
def engine(tmp_path, provider, notifier, clock):
    return Engine.build(make_settings(tmp_path), provider=provider, notifier=notifier, clock=clock)


@pytest.fixture
async def host(engine):
    """A UTC host working 09:00-17:00 on weekdays with one attached calendar."""
    return await engine.directory.upsert_profile(
        HOST_ID,
        {
            "handle": "ada",
            "timezone": "UTC",
            "working_hours": WEEKDAY_HOURS,
            "calendar_ids": ["primary"],
        },
    )
