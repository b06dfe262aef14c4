"""Booking lifecycle: create, reschedule, cancel, confirm.

States and transitions::

    scheduled ──confirm, reschedule──▶ confirmed ──┐
        │                                 │  ▲      │
        │                                 │  └──────┘ reschedule
        └──────cancel──▶ canceled ◀──cancel──┘

``canceled`` is terminal. A guest reschedule always lands in ``confirmed``.
Guest-side changes are authorised by single-use action tokens; the host-side
``confirm`` and ``cancel_by_host`` trust the host identity supplied by the
caller.

Every write goes through the store's versioned update, so of two concurrent
changes to one booking exactly one commits. The external calendar mirror and
notifications run after the commit: their failures are logged and recorded on
the booking but never undo it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from booking_engine.availability import MAX_DURATION_MIN, MIN_DURATION_MIN, resolve_timezone
from booking_engine.calendar_providers.base import CalendarEvent, CalendarProvider, TimeSlot
from booking_engine.conflicts import ConflictGuard
from booking_engine.errors import (
    BookingAlreadyTerminal,
    InputValidationError,
    NotFoundError,
    RescheduleBudgetExhausted,
    SlotConflict,
    TokenConsumed,
    TokenInvalid,
)
from booking_engine.hosts import HostDirectory
from booking_engine.models import (
    Booking,
    BookingReceipt,
    BookingSource,
    BookingStatus,
    EffectiveSchedule,
    ExternalEvent,
    GuestContact,
    RescheduleEntry,
)
from booking_engine.notifications import NotificationDispatcher
from booking_engine.redact import redact_pii
from booking_engine.reminders import (
    calculate_reminders,
    due_reminders,
    mark_reminder_sent,
    recompute_reminders,
)
from booking_engine.store import Store
from booking_engine.tokens import CANCEL, RESCHEDULE, ActionTokenSigner, TokenClaims

log = logging.getLogger("booking_engine.lifecycle")

RESCHEDULE_BUDGET = 3

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: Exception) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timed out"
    return str(exc) or type(exc).__name__


def _to_utc(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None:
        raise InputValidationError(f"{field_name} must include a timezone offset")
    return value.astimezone(timezone.utc).replace(microsecond=0)


class BookingManager:
    def __init__(
        self,
        store: Store,
        directory: HostDirectory,
        guard: ConflictGuard,
        signer: ActionTokenSigner,
        provider: CalendarProvider,
        notifier: NotificationDispatcher,
        *,
        clock: Callable[[], datetime] = _utc_now,
        provider_timeout: float = 5.0,
        feature_reschedule: bool = True,
        feature_reminders: bool = True,
    ) -> None:
        self._store = store
        self._directory = directory
        self._guard = guard
        self._signer = signer
        self._provider = provider
        self._notifier = notifier
        self._clock = clock
        self._provider_timeout = provider_timeout
        self.feature_reschedule = feature_reschedule
        self.feature_reminders = feature_reminders

    # ── Validation ─────────────────────────────────────────────

    def _check_interval(self, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        start = _to_utc(start, "start")
        end = _to_utc(end, "end")
        if end <= start:
            raise InputValidationError("end must be after start")
        minutes = (end - start) / timedelta(minutes=1)
        if not MIN_DURATION_MIN <= minutes <= MAX_DURATION_MIN:
            raise InputValidationError(
                f"duration must be between {MIN_DURATION_MIN} and {MAX_DURATION_MIN} minutes"
            )
        if start <= self._clock():
            raise InputValidationError("Cannot book a time in the past")
        return start, end

    @staticmethod
    def _check_guest(guest: GuestContact) -> GuestContact:
        name = guest.name.strip()
        email = guest.email.strip()
        if not name:
            raise InputValidationError("Guest name is required")
        if not _EMAIL_PATTERN.match(email):
            raise InputValidationError("Invalid email format")
        return GuestContact(name=name, email=email)

    # ── Create ─────────────────────────────────────────────────

    async def create(
        self,
        host_id: str,
        start: datetime,
        end: datetime,
        guest: GuestContact,
        *,
        event_type: Optional[str] = None,
        timezone_name: str = "UTC",
        notes: str = "",
        source: BookingSource = BookingSource.PUBLIC_LINK,
    ) -> BookingReceipt:
        """Commit a new booking for ``[start, end)``.

        Raises:
            InputValidationError: Bad interval, guest or timezone.
            NotFoundError: Unknown host or event type.
            SlotConflict: The interval is no longer free.
        """
        start, end = self._check_interval(start, end)
        guest = self._check_guest(guest)
        resolve_timezone(timezone_name)

        schedule = await self._directory.effective_schedule(host_id, event_type)
        await self._guard.ensure_free(schedule, start, end)

        now = self._clock()
        booking = Booking(
            id=uuid.uuid4().hex,
            host_id=host_id,
            event_type_id=schedule.event_type_id,
            guest=guest,
            start=start,
            end=end,
            timezone=timezone_name,
            status=(
                BookingStatus.SCHEDULED if schedule.requires_confirmation
                else BookingStatus.CONFIRMED
            ),
            source=source,
            title=f"Meeting with {guest.name}",
            notes=notes,
            reminders=(
                calculate_reminders(start, schedule.reminders, now)
                if self.feature_reminders else []
            ),
            created_at=now,
            updated_at=now,
        )
        with self._guard.first_writer_wins():
            booking = await self._store.insert_booking(booking)
        log.info(
            "Booking %s created: host=%s start=%s status=%s source=%s guest=%s",
            booking.id, host_id, start.isoformat(), booking.status.value,
            source.value, redact_pii(guest.email),
        )

        booking = await self._mirror_insert(booking, schedule)

        receipt = BookingReceipt(
            booking=booking,
            cancel_token=self._issue(booking, CANCEL),
            reschedule_token=self._issue(booking, RESCHEDULE) if self.feature_reschedule else None,
        )
        await self._dispatch(
            "created", booking.id, self._notifier.send_created(booking, receipt.tokens)
        )
        return receipt

    # ── Guest changes ──────────────────────────────────────────

    async def reschedule(
        self,
        token: str,
        new_start: datetime,
        new_end: datetime,
        *,
        timezone_name: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> BookingReceipt:
        """Move a booking to a new interval using a reschedule token.

        The returned receipt carries a fresh reschedule token while the
        booking still has reschedules left.

        Raises:
            TokenInvalid, TokenExpired, TokenConsumed: Token checks.
            BookingAlreadyTerminal: The booking is canceled.
            RescheduleBudgetExhausted: Already moved ``RESCHEDULE_BUDGET`` times.
            SlotConflict: The new interval is not free.
        """
        if not self.feature_reschedule:
            raise InputValidationError("Rescheduling is disabled")
        claims = self._signer.verify(token, RESCHEDULE)
        booking = await self._load_for_token(claims, booking_id)
        if booking.reschedule_count >= RESCHEDULE_BUDGET:
            raise RescheduleBudgetExhausted()

        new_start, new_end = self._check_interval(new_start, new_end)
        if timezone_name:
            resolve_timezone(timezone_name)

        schedule = await self._directory.schedule_for_booking(
            booking.host_id, booking.event_type_id
        )
        await self._guard.ensure_free(
            schedule,
            new_start,
            new_end,
            exclude_booking_id=booking.id,
            # the booking's own mirrored event still shows as busy
            ignore=[TimeSlot(start=booking.start, end=booking.end)],
        )

        now = self._clock()
        moved = booking.model_copy(
            update={
                "start": new_start,
                "end": new_end,
                "timezone": timezone_name or booking.timezone,
                "status": BookingStatus.CONFIRMED,
                "reschedule_count": booking.reschedule_count + 1,
                "reschedule_history": [
                    *booking.reschedule_history,
                    RescheduleEntry(start=booking.start, end=booking.end, changed_at=now),
                ],
                "consumed_nonces": [*booking.consumed_nonces, claims.nonce],
                "reminders": (
                    recompute_reminders(booking.reminders, new_start, schedule.reminders, now)
                    if self.feature_reminders else []
                ),
                "updated_at": now,
            }
        )
        stored = await self._commit(booking, moved, claims)
        log.info(
            "Booking %s rescheduled (%d/%d): %s -> %s",
            stored.id, stored.reschedule_count, RESCHEDULE_BUDGET,
            booking.start.isoformat(), new_start.isoformat(),
        )

        stored = await self._mirror_move(stored, schedule)

        receipt = BookingReceipt(
            booking=stored,
            reschedule_token=(
                self._issue(stored, RESCHEDULE)
                if stored.reschedule_count < RESCHEDULE_BUDGET else None
            ),
        )
        await self._dispatch(
            "rescheduled", stored.id, self._notifier.send_rescheduled(stored, receipt.tokens)
        )
        return receipt

    async def cancel(self, token: str, *, booking_id: Optional[str] = None) -> Booking:
        """Cancel a booking using a cancel token. The token cannot be reused."""
        claims = self._signer.verify(token, CANCEL)
        booking = await self._load_for_token(claims, booking_id)
        canceled = booking.model_copy(
            update={
                "status": BookingStatus.CANCELED,
                "consumed_nonces": [*booking.consumed_nonces, claims.nonce],
                "updated_at": self._clock(),
            }
        )
        stored = await self._commit(booking, canceled, claims)
        log.info("Booking %s canceled by guest", stored.id)
        return await self._after_cancel(stored)

    # ── Host changes ───────────────────────────────────────────

    async def confirm(self, host_id: str, booking_id: str) -> Booking:
        booking = await self._get_owned(host_id, booking_id)
        if not booking.is_active:
            raise BookingAlreadyTerminal()
        if booking.status is BookingStatus.CONFIRMED:
            return booking
        confirmed = booking.model_copy(
            update={"status": BookingStatus.CONFIRMED, "updated_at": self._clock()}
        )
        stored = await self._commit(booking, confirmed)
        log.info("Booking %s confirmed by host %s", stored.id, host_id)
        return stored

    async def cancel_by_host(self, host_id: str, booking_id: str) -> Booking:
        booking = await self._get_owned(host_id, booking_id)
        if not booking.is_active:
            raise BookingAlreadyTerminal()
        canceled = booking.model_copy(
            update={"status": BookingStatus.CANCELED, "updated_at": self._clock()}
        )
        stored = await self._commit(booking, canceled)
        log.info("Booking %s canceled by host %s", stored.id, host_id)
        return await self._after_cancel(stored)

    # ── Reads ──────────────────────────────────────────────────

    async def get(self, booking_id: str) -> Booking:
        booking = await self._store.get_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    async def get_for_host(self, host_id: str, booking_id: str) -> Booking:
        return await self._get_owned(host_id, booking_id)

    async def list_for_host(
        self,
        host_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        include_canceled: bool = True,
    ) -> list[Booking]:
        if start is not None:
            start = _to_utc(start, "start")
        if end is not None:
            end = _to_utc(end, "end")
        return await self._store.list_bookings(
            host_id, start, end, active_only=not include_canceled
        )

    # ── Reminders ──────────────────────────────────────────────

    async def send_due_reminders(self, now: Optional[datetime] = None) -> int:
        """Dispatch every due, unsent reminder of active bookings.

        Driven by an external scheduler. Returns how many reminders were sent.
        """
        if not self.feature_reminders:
            return 0
        now = now or self._clock()
        sent = 0
        for booking in await self._store.list_bookings(start=now, active_only=True):
            due = due_reminders(booking, now)
            if not due:
                continue
            reminders = booking.reminders
            for reminder in due:
                try:
                    await self._notifier.send_reminder(booking, reminder)
                except Exception as exc:
                    log.warning(
                        "Reminder %s for booking %s failed: %s", reminder.type, booking.id, exc
                    )
                    continue
                reminders = mark_reminder_sent(reminders, reminder.id, now)
                sent += 1
            if reminders != booking.reminders:
                stored = await self._store.update_booking(
                    booking.model_copy(update={"reminders": reminders}), booking.version
                )
                if stored is None:
                    log.warning(
                        "Booking %s changed while sending reminders; sent state not recorded",
                        booking.id,
                    )
        return sent

    # ── Internals ──────────────────────────────────────────────

    def _issue(self, booking: Booking, purpose: str) -> str:
        token, _ = self._signer.issue(booking.id, booking.guest.email, purpose)
        return token

    async def _get_owned(self, host_id: str, booking_id: str) -> Booking:
        booking = await self._store.get_booking(booking_id)
        if booking is None or booking.host_id != host_id:
            raise NotFoundError("Booking not found")
        return booking

    async def _load_for_token(
        self, claims: TokenClaims, booking_id: Optional[str]
    ) -> Booking:
        """Load the booking a verified token targets and check it may still act."""
        if booking_id is not None and booking_id != claims.booking_id:
            log.warning("Token for booking %s presented for %s", claims.booking_id, booking_id)
            raise TokenInvalid("Token does not belong to this booking")
        booking = await self._store.get_booking(claims.booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if booking.guest.email.lower() != claims.guest_email:
            raise TokenInvalid("Token does not belong to this booking")
        if booking.nonce_consumed(claims.nonce):
            raise TokenConsumed()
        if not booking.is_active:
            raise BookingAlreadyTerminal()
        return booking

    async def _commit(
        self,
        current: Booking,
        updated: Booking,
        claims: Optional[TokenClaims] = None,
    ) -> Booking:
        """Versioned write of ``updated`` over ``current``.

        A lost race re-reads the booking and raises whatever its new state
        implies for this caller.
        """
        with self._guard.first_writer_wins():
            stored = await self._store.update_booking(updated, current.version)
        if stored is not None:
            return stored

        fresh = await self._store.get_booking(current.id)
        log.info("Concurrent update on booking %s", current.id)
        if fresh is None:
            raise NotFoundError("Booking not found")
        if claims is not None and fresh.nonce_consumed(claims.nonce):
            raise TokenConsumed()
        if not fresh.is_active:
            raise BookingAlreadyTerminal()
        raise SlotConflict("The booking changed while this request was in flight")

    async def _after_cancel(self, booking: Booking) -> Booking:
        booking = await self._mirror_delete(booking)
        await self._dispatch("canceled", booking.id, self._notifier.send_canceled(booking))
        return booking

    async def _dispatch(self, what: str, booking_id: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception as exc:
            log.warning("Notification %s for booking %s failed: %s", what, booking_id, exc)

    # ── External calendar mirror ───────────────────────────────

    @staticmethod
    def _event_for(booking: Booking) -> CalendarEvent:
        return CalendarEvent(
            summary=booking.title,
            start=booking.start,
            end=booking.end,
            description=booking.notes,
            attendees=[booking.guest.email],
            timezone=booking.timezone,
        )

    async def _call_provider(self, call: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(call, timeout=self._provider_timeout)

    async def _save_mirror(self, booking: Booking, **changes: Any) -> Booking:
        stored = await self._store.update_booking(
            booking.model_copy(update=changes), booking.version
        )
        if stored is None:
            log.warning(
                "mirror discrepancy: booking %s changed before mirror state %s was recorded",
                booking.id, changes,
            )
            return booking
        return stored

    async def _mirror_insert(self, booking: Booking, schedule: EffectiveSchedule) -> Booking:
        """Create the event on the first attached calendar that accepts it."""
        if not schedule.calendar_ids:
            return booking
        event = self._event_for(booking)
        failures: list[str] = []
        for calendar_id in schedule.calendar_ids:
            try:
                event_id = await self._call_provider(
                    self._provider.insert_event(calendar_id, event)
                )
            except Exception as exc:
                failures.append(f"{calendar_id}: {_describe(exc)}")
                continue
            if event_id:
                return await self._save_mirror(
                    booking,
                    external_event=ExternalEvent(calendar_id=calendar_id, event_id=event_id),
                    mirror_error=None,
                )
        if not failures:
            return booking
        log.warning("mirror discrepancy: booking %s not mirrored: %s", booking.id, failures)
        return await self._save_mirror(booking, mirror_error="; ".join(failures))

    async def _mirror_move(self, booking: Booking, schedule: EffectiveSchedule) -> Booking:
        ext = booking.external_event
        if ext is None or ext.deleted:
            return await self._mirror_insert(booking, schedule)
        try:
            await self._call_provider(
                self._provider.update_event(ext.calendar_id, ext.event_id, self._event_for(booking))
            )
        except Exception as exc:
            log.warning(
                "mirror discrepancy: event %s for booking %s not moved: %s",
                ext.event_id, booking.id, exc,
            )
            return await self._save_mirror(booking, mirror_error=_describe(exc))
        if booking.mirror_error:
            return await self._save_mirror(booking, mirror_error=None)
        return booking

    async def _mirror_delete(self, booking: Booking) -> Booking:
        ext = booking.external_event
        if ext is None or ext.deleted:
            return booking
        try:
            await self._call_provider(self._provider.delete_event(ext.calendar_id, ext.event_id))
        except Exception as exc:
            log.warning(
                "mirror discrepancy: event %s for booking %s not deleted: %s",
                ext.event_id, booking.id, exc,
            )
            return await self._save_mirror(booking, mirror_error=_describe(exc))
        return await self._save_mirror(
            booking, external_event=ext.model_copy(update={"deleted": True}), mirror_error=None
        )
