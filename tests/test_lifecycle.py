"""Tests for the booking lifecycle: create, reschedule, cancel, host actions."""

import asyncio
from datetime import timedelta

import pytest

from conftest import HOST_ID, WEEKDAY_HOURS, utc

from booking_engine.calendar_providers.base import TimeSlot
from booking_engine.errors import (
    BookingAlreadyTerminal,
    InputValidationError,
    NotFoundError,
    RescheduleBudgetExhausted,
    SlotConflict,
    TokenConsumed,
    TokenExpired,
    TokenInvalid,
)
from booking_engine.lifecycle import RESCHEDULE_BUDGET
from booking_engine.models import BookingSource, BookingStatus, GuestContact
from booking_engine.tokens import RESCHEDULE

GUEST = GuestContact(name="Grace Hopper", email="grace@example.com")
T10 = utc(2026, 3, 17, 10, 0)


async def book(engine, start=T10, minutes=30, guest=GUEST, **kwargs):
    return await engine.bookings.create(
        HOST_ID, start, start + timedelta(minutes=minutes), guest, **kwargs
    )


async def reschedule(engine, token, start, minutes=30, **kwargs):
    return await engine.bookings.reschedule(
        token, start, start + timedelta(minutes=minutes), **kwargs
    )


async def set_profile(engine, **changes):
    data = {
        "handle": "ada",
        "timezone": "UTC",
        "working_hours": WEEKDAY_HOURS,
        "calendar_ids": ["primary"],
    }
    data.update(changes)
    await engine.directory.upsert_profile(HOST_ID, data)


# ── Create ─────────────────────────────────────────────────────────


class TestCreate:
    async def test_creates_confirmed_booking(self, engine, host, notifier):
        receipt = await book(engine)
        booking = receipt.booking
        assert booking.status is BookingStatus.CONFIRMED
        assert booking.title == "Meeting with Grace Hopper"
        assert booking.start == T10
        assert booking.source is BookingSource.PUBLIC_LINK
        assert set(receipt.tokens) == {"cancel", "reschedule"}
        assert notifier.kinds() == ["created"]

        stored = await engine.bookings.get(booking.id)
        assert stored.status is BookingStatus.CONFIRMED

    async def test_reminders_scheduled(self, engine, host):
        booking = (await book(engine)).booking
        send_at = {r.type: r.send_at for r in booking.reminders}
        assert send_at == {"24h": T10 - timedelta(hours=24), "1h": T10 - timedelta(hours=1)}

    async def test_mirrored_to_calendar(self, engine, host, provider):
        booking = (await book(engine)).booking
        assert booking.external_event is not None
        assert booking.external_event.calendar_id == "primary"
        _, event = provider.events[booking.external_event.event_id]
        assert event.attendees == ["grace@example.com"]
        assert event.summary == "Meeting with Grace Hopper"

    async def test_requires_confirmation_starts_scheduled(self, engine, host):
        await set_profile(engine, requires_confirmation=True)
        booking = (await book(engine)).booking
        assert booking.status is BookingStatus.SCHEDULED

    async def test_event_type_applied(self, engine, host):
        event_type = await engine.directory.create_event_type(
            HOST_ID, {"name": "Deep dive", "duration_min": 60}
        )
        booking = (await book(engine, minutes=60, event_type="deep-dive")).booking
        assert booking.event_type_id == event_type.id

    async def test_microseconds_dropped(self, engine, host):
        booking = (await book(engine, start=T10.replace(microsecond=250))).booking
        assert booking.start == T10

    async def test_outside_working_hours(self, engine, host):
        with pytest.raises(SlotConflict):
            await book(engine, start=utc(2026, 3, 17, 7, 0))

    async def test_inside_min_notice(self, engine, host):
        with pytest.raises(SlotConflict):
            await book(engine, start=utc(2026, 3, 16, 9, 0))

    async def test_external_busy_conflict(self, engine, host, provider):
        provider.busy["primary"] = [TimeSlot(T10, T10 + timedelta(hours=1))]
        with pytest.raises(SlotConflict):
            await book(engine)

    async def test_same_slot_twice(self, engine, host):
        await book(engine)
        with pytest.raises(SlotConflict):
            await book(engine, guest=GuestContact(name="Alan", email="alan@example.com"))

    async def test_overlapping_slot(self, engine, host):
        await book(engine)
        with pytest.raises(SlotConflict):
            await book(engine, start=T10 + timedelta(minutes=15))

    async def test_concurrent_creates_one_winner(self, engine, host):
        results = await asyncio.gather(
            book(engine, guest=GuestContact(name="A", email="a@example.com")),
            book(engine, guest=GuestContact(name="B", email="b@example.com")),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1 and isinstance(losers[0], SlotConflict)
        active = await engine.bookings.list_for_host(HOST_ID, include_canceled=False)
        assert len(active) == 1

    @pytest.mark.parametrize(
        "guest",
        [
            GuestContact(name="Grace", email="not-an-email"),
            GuestContact(name="   ", email="grace@example.com"),
        ],
    )
    async def test_invalid_guest(self, engine, host, guest):
        with pytest.raises(InputValidationError):
            await book(engine, guest=guest)

    async def test_past_start(self, engine, host):
        with pytest.raises(InputValidationError):
            await book(engine, start=utc(2026, 3, 13, 10, 0))

    async def test_end_before_start(self, engine, host):
        with pytest.raises(InputValidationError):
            await engine.bookings.create(HOST_ID, T10, T10 - timedelta(minutes=30), GUEST)

    async def test_naive_datetime(self, engine, host):
        with pytest.raises(InputValidationError):
            await book(engine, start=T10.replace(tzinfo=None))

    async def test_unknown_timezone(self, engine, host):
        with pytest.raises(InputValidationError):
            await book(engine, timezone_name="Nowhere/City")

    async def test_unknown_host(self, engine):
        with pytest.raises(NotFoundError):
            await book(engine)

    async def test_mirror_failure_is_recorded_not_fatal(self, engine, host, provider):
        provider.failing_inserts = {"primary"}
        booking = (await book(engine)).booking
        assert booking.external_event is None
        assert "primary" in booking.mirror_error
        stored = await engine.bookings.get(booking.id)
        assert stored.status is BookingStatus.CONFIRMED
        assert stored.mirror_error == booking.mirror_error

    async def test_mirror_falls_through_to_next_calendar(self, engine, host, provider):
        await set_profile(engine, calendar_ids=["primary", "team"])
        provider.failing_inserts = {"primary"}
        booking = (await book(engine)).booking
        assert booking.external_event.calendar_id == "team"
        assert booking.mirror_error is None

    async def test_unexpected_provider_error_is_recorded_not_fatal(self, engine, host, provider):
        provider.crash = True
        booking = (await book(engine)).booking
        assert booking.external_event is None
        assert "unexpected response shape" in booking.mirror_error
        stored = await engine.bookings.get(booking.id)
        assert stored.is_active
        assert stored.mirror_error == booking.mirror_error

    async def test_notifier_failure_is_not_fatal(self, engine, host, notifier):
        notifier.fail = True
        receipt = await book(engine)
        assert (await engine.bookings.get(receipt.booking.id)).is_active

    async def test_no_reschedule_token_when_feature_off(self, engine, host):
        engine.bookings.feature_reschedule = False
        receipt = await book(engine)
        assert set(receipt.tokens) == {"cancel"}


# ── Reschedule ─────────────────────────────────────────────────────


class TestReschedule:
    async def test_moves_booking(self, engine, host, provider, notifier):
        receipt = await book(engine)
        new_start = utc(2026, 3, 17, 11, 0)
        moved = await reschedule(engine, receipt.reschedule_token, new_start)
        booking = moved.booking
        assert booking.start == new_start
        assert booking.reschedule_count == 1
        assert [(h.start, h.end) for h in booking.reschedule_history] == [
            (T10, T10 + timedelta(minutes=30))
        ]
        assert moved.reschedule_token and moved.reschedule_token != receipt.reschedule_token
        assert provider.updated == [("primary", booking.external_event.event_id)]
        assert notifier.kinds() == ["created", "rescheduled"]
        assert {r.type: r.send_at for r in booking.reminders}["1h"] == new_start - timedelta(hours=1)

    async def test_reschedule_confirms_pending_booking(self, engine, host):
        await set_profile(engine, requires_confirmation=True)
        receipt = await book(engine)
        assert receipt.booking.status is BookingStatus.SCHEDULED
        moved = await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))
        assert moved.booking.status is BookingStatus.CONFIRMED
        assert (await engine.bookings.get(receipt.booking.id)).status is BookingStatus.CONFIRMED

    async def test_reschedule_keeps_confirmed(self, engine, host):
        receipt = await book(engine)
        moved = await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))
        assert moved.booking.status is BookingStatus.CONFIRMED

    async def test_unexpected_provider_error_on_move(self, engine, host, provider):
        receipt = await book(engine)
        provider.crash = True
        moved = await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))
        assert moved.booking.start == utc(2026, 3, 17, 11, 0)
        assert "unexpected response shape" in moved.booking.mirror_error

    async def test_old_slot_freed(self, engine, host):
        receipt = await book(engine)
        await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))
        other = await book(engine, guest=GuestContact(name="Alan", email="alan@example.com"))
        assert other.booking.start == T10

    async def test_token_is_single_use(self, engine, host):
        receipt = await book(engine)
        await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))
        with pytest.raises(TokenConsumed):
            await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 12, 0))

    async def test_budget_of_three(self, engine, host):
        receipt = await book(engine)
        token = receipt.reschedule_token
        for hour in (11, 12, 13):
            moved = await reschedule(engine, token, utc(2026, 3, 17, hour, 0))
            token = moved.reschedule_token
        assert moved.booking.reschedule_count == RESCHEDULE_BUDGET
        assert token is None

        fresh, _ = engine.signer.issue(receipt.booking.id, GUEST.email, RESCHEDULE)
        with pytest.raises(RescheduleBudgetExhausted):
            await reschedule(engine, fresh, utc(2026, 3, 17, 14, 0))

    async def test_budget_checked_before_slot(self, engine, host):
        receipt = await book(engine)
        token = receipt.reschedule_token
        for hour in (11, 12, 13):
            token = (await reschedule(engine, token, utc(2026, 3, 17, hour, 0))).reschedule_token
        fresh, _ = engine.signer.issue(receipt.booking.id, GUEST.email, RESCHEDULE)
        # Sunday: not bookable either way
        with pytest.raises(RescheduleBudgetExhausted):
            await reschedule(engine, fresh, utc(2026, 3, 22, 10, 0))

    async def test_token_bound_to_its_booking(self, engine, host):
        a = await book(engine)
        b = await book(engine, start=utc(2026, 3, 17, 14, 0))
        with pytest.raises(TokenInvalid):
            await reschedule(
                engine, a.reschedule_token, utc(2026, 3, 17, 15, 0), booking_id=b.booking.id
            )

    async def test_cancel_token_cannot_reschedule(self, engine, host):
        receipt = await book(engine)
        with pytest.raises(TokenInvalid):
            await reschedule(engine, receipt.cancel_token, utc(2026, 3, 17, 11, 0))

    async def test_conflict_leaves_booking_and_token_intact(self, engine, host, provider):
        receipt = await book(engine)
        provider.busy["primary"] = [TimeSlot(utc(2026, 3, 17, 11, 0), utc(2026, 3, 17, 12, 0))]
        with pytest.raises(SlotConflict):
            await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))
        stored = await engine.bookings.get(receipt.booking.id)
        assert stored.start == T10 and stored.reschedule_count == 0
        moved = await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 13, 0))
        assert moved.booking.reschedule_count == 1

    async def test_own_mirrored_event_ignored(self, engine, host, provider):
        receipt = await book(engine)
        # the calendar now reports the booking's own event as busy
        provider.busy["primary"] = [TimeSlot(T10, T10 + timedelta(minutes=30))]
        moved = await reschedule(engine, receipt.reschedule_token, T10 + timedelta(minutes=15))
        assert moved.booking.start == T10 + timedelta(minutes=15)

    async def test_expired_token(self, engine, host, clock):
        receipt = await book(engine)
        clock.advance(hours=49)
        with pytest.raises(TokenExpired):
            await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 19, 11, 0))

    async def test_canceled_booking_is_terminal(self, engine, host):
        receipt = await book(engine)
        await engine.bookings.cancel(receipt.cancel_token)
        with pytest.raises(BookingAlreadyTerminal):
            await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))

    async def test_concurrent_use_of_one_token(self, engine, host):
        receipt = await book(engine)
        results = await asyncio.gather(
            reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0)),
            reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 12, 0)),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1 and isinstance(errors[0], TokenConsumed)
        stored = await engine.bookings.get(receipt.booking.id)
        assert stored.reschedule_count == 1

    async def test_disabled_feature(self, engine, host):
        receipt = await book(engine)
        engine.bookings.feature_reschedule = False
        with pytest.raises(InputValidationError):
            await reschedule(engine, receipt.reschedule_token, utc(2026, 3, 17, 11, 0))


# ── Cancel ─────────────────────────────────────────────────────────


class TestCancel:
    async def test_cancels_and_removes_mirror(self, engine, host, provider, notifier):
        receipt = await book(engine)
        event_id = receipt.booking.external_event.event_id
        booking = await engine.bookings.cancel(receipt.cancel_token)
        assert booking.status is BookingStatus.CANCELED
        assert booking.external_event.deleted
        assert provider.deleted == [("primary", event_id)]
        assert notifier.kinds() == ["created", "canceled"]

    async def test_second_cancel_consumed_and_no_second_delete(self, engine, host, provider):
        receipt = await book(engine)
        await engine.bookings.cancel(receipt.cancel_token)
        with pytest.raises(TokenConsumed):
            await engine.bookings.cancel(receipt.cancel_token)
        assert len(provider.deleted) == 1

    async def test_concurrent_cancels(self, engine, host, provider):
        receipt = await book(engine)
        results = await asyncio.gather(
            engine.bookings.cancel(receipt.cancel_token),
            engine.bookings.cancel(receipt.cancel_token),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1 and isinstance(errors[0], TokenConsumed)
        assert len(provider.deleted) == 1

    async def test_slot_reusable_after_cancel(self, engine, host):
        receipt = await book(engine)
        await engine.bookings.cancel(receipt.cancel_token)
        again = await book(engine, guest=GuestContact(name="Alan", email="alan@example.com"))
        assert again.booking.start == T10

    async def test_wrong_booking_id(self, engine, host):
        receipt = await book(engine)
        with pytest.raises(TokenInvalid):
            await engine.bookings.cancel(receipt.cancel_token, booking_id="someone-else")

    async def test_delete_failure_recorded(self, engine, host, provider):
        receipt = await book(engine)
        provider.down = True
        booking = await engine.bookings.cancel(receipt.cancel_token)
        assert booking.status is BookingStatus.CANCELED
        assert booking.mirror_error
        assert not booking.external_event.deleted

    async def test_unexpected_provider_error_on_delete(self, engine, host, provider):
        receipt = await book(engine)
        provider.crash = True
        booking = await engine.bookings.cancel(receipt.cancel_token)
        assert booking.status is BookingStatus.CANCELED
        assert booking.mirror_error == "unexpected response shape"
        assert not booking.external_event.deleted


# ── Host actions and reads ─────────────────────────────────────────


class TestHostActions:
    async def test_confirm_scheduled(self, engine, host):
        await set_profile(engine, requires_confirmation=True)
        receipt = await book(engine)
        booking = await engine.bookings.confirm(HOST_ID, receipt.booking.id)
        assert booking.status is BookingStatus.CONFIRMED

    async def test_confirm_is_idempotent(self, engine, host):
        receipt = await book(engine)
        booking = await engine.bookings.confirm(HOST_ID, receipt.booking.id)
        assert booking.status is BookingStatus.CONFIRMED

    async def test_confirm_canceled(self, engine, host):
        receipt = await book(engine)
        await engine.bookings.cancel(receipt.cancel_token)
        with pytest.raises(BookingAlreadyTerminal):
            await engine.bookings.confirm(HOST_ID, receipt.booking.id)

    async def test_other_host_sees_not_found(self, engine, host):
        receipt = await book(engine)
        with pytest.raises(NotFoundError):
            await engine.bookings.confirm("host-2", receipt.booking.id)
        with pytest.raises(NotFoundError):
            await engine.bookings.get_for_host("host-2", receipt.booking.id)

    async def test_host_cancel_then_guest_cancel(self, engine, host, provider):
        receipt = await book(engine)
        await engine.bookings.cancel_by_host(HOST_ID, receipt.booking.id)
        assert len(provider.deleted) == 1
        with pytest.raises(BookingAlreadyTerminal):
            await engine.bookings.cancel(receipt.cancel_token)
        with pytest.raises(BookingAlreadyTerminal):
            await engine.bookings.cancel_by_host(HOST_ID, receipt.booking.id)

    async def test_list_for_host(self, engine, host):
        a = await book(engine)
        await book(engine, start=utc(2026, 3, 17, 14, 0))
        await engine.bookings.cancel(a.cancel_token)
        everything = await engine.bookings.list_for_host(HOST_ID)
        active = await engine.bookings.list_for_host(HOST_ID, include_canceled=False)
        assert len(everything) == 2
        assert [b.start.hour for b in active] == [14]

    async def test_get_unknown(self, engine):
        with pytest.raises(NotFoundError):
            await engine.bookings.get("missing")


# ── Reminders ──────────────────────────────────────────────────────


class TestSendDueReminders:
    async def test_sends_each_reminder_once(self, engine, host, notifier):
        receipt = await book(engine)
        assert await engine.bookings.send_due_reminders(T10 - timedelta(hours=23)) == 1
        assert await engine.bookings.send_due_reminders(T10 - timedelta(hours=23)) == 0
        assert await engine.bookings.send_due_reminders(T10 - timedelta(minutes=30)) == 1
        sent = [p["type"] for kind, _, p in notifier.sent if kind == "reminder"]
        assert sent == ["24h", "1h"]
        stored = await engine.bookings.get(receipt.booking.id)
        assert all(r.sent_at is not None for r in stored.reminders)

    async def test_canceled_bookings_skipped(self, engine, host):
        receipt = await book(engine)
        await engine.bookings.cancel(receipt.cancel_token)
        assert await engine.bookings.send_due_reminders(T10 - timedelta(minutes=30)) == 0

    async def test_failed_send_retried_later(self, engine, host, notifier):
        await book(engine)
        notifier.fail = True
        assert await engine.bookings.send_due_reminders(T10 - timedelta(hours=23)) == 0
        notifier.fail = False
        assert await engine.bookings.send_due_reminders(T10 - timedelta(hours=23)) == 1

    async def test_feature_off(self, engine, host):
        await book(engine)
        engine.bookings.feature_reminders = False
        assert await engine.bookings.send_due_reminders(T10) == 0
