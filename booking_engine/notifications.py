"""Outbound notification dispatch.

Dispatchers are fire-and-continue: the lifecycle manager calls them after the
booking is committed and only logs their failures. Message formatting (email,
ICS) belongs to whatever consumes these notifications.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from booking_engine.models import Booking, Reminder
from booking_engine.redact import redact_pii

log = logging.getLogger("booking_engine.notifications")


class NotificationDispatcher(ABC):
    @abstractmethod
    async def send_created(self, booking: Booking, tokens: dict[str, str]) -> None:
        """A booking was created; ``tokens`` holds the guest's action tokens."""

    @abstractmethod
    async def send_rescheduled(self, booking: Booking, tokens: dict[str, str]) -> None:
        """A booking moved; ``tokens`` holds the fresh reschedule token, if any."""

    @abstractmethod
    async def send_canceled(self, booking: Booking) -> None:
        """A booking was canceled."""

    @abstractmethod
    async def send_reminder(self, booking: Booking, reminder: Reminder) -> None:
        """A reminder came due."""

    async def aclose(self) -> None:
        """Release any held resources."""


class LoggingDispatcher(NotificationDispatcher):
    """Records notifications in the log only."""

    async def send_created(self, booking: Booking, tokens: dict[str, str]) -> None:
        log.info(
            "Notify created: booking=%s guest=%s start=%s",
            booking.id, redact_pii(booking.guest.email), booking.start.isoformat(),
        )

    async def send_rescheduled(self, booking: Booking, tokens: dict[str, str]) -> None:
        log.info(
            "Notify rescheduled: booking=%s guest=%s start=%s count=%d",
            booking.id, redact_pii(booking.guest.email), booking.start.isoformat(),
            booking.reschedule_count,
        )

    async def send_canceled(self, booking: Booking) -> None:
        log.info("Notify canceled: booking=%s guest=%s", booking.id, redact_pii(booking.guest.email))

    async def send_reminder(self, booking: Booking, reminder: Reminder) -> None:
        log.info("Notify reminder %s: booking=%s", reminder.type, booking.id)


class WebhookDispatcher(NotificationDispatcher):
    """POSTs each notification as JSON to a configured URL."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def _post(self, event: str, booking: Booking, extra: dict[str, Any]) -> None:
        payload = {
            "event": event,
            "booking": booking.model_dump(mode="json", exclude={"consumed_nonces"}),
            **extra,
        }
        resp = await self._client.post(self._url, json=payload)
        resp.raise_for_status()

    async def send_created(self, booking: Booking, tokens: dict[str, str]) -> None:
        await self._post("booking.created", booking, {"tokens": tokens})

    async def send_rescheduled(self, booking: Booking, tokens: dict[str, str]) -> None:
        await self._post("booking.rescheduled", booking, {"tokens": tokens})

    async def send_canceled(self, booking: Booking) -> None:
        await self._post("booking.canceled", booking, {})

    async def send_reminder(self, booking: Booking, reminder: Reminder) -> None:
        await self._post(
            "booking.reminder", booking, {"reminder": reminder.model_dump(mode="json")}
        )

    async def aclose(self) -> None:
        await self._client.aclose()
