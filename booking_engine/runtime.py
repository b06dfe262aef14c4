"""Process-wide engine wiring.

``Engine`` builds every component once from ``Settings`` and hands each its
collaborators by constructor. The HTTP layer reaches it through
``get_engine()``; tests install their own with ``set_engine()``.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from booking_engine.availability import AvailabilityService
from booking_engine.busy import BusyResolver
from booking_engine.calendar_providers import CalendarProvider, get_calendar_provider
from booking_engine.config import Settings
from booking_engine.conflicts import ConflictGuard
from booking_engine.hosts import HostDirectory
from booking_engine.lifecycle import BookingManager
from booking_engine.notifications import (
    LoggingDispatcher,
    NotificationDispatcher,
    WebhookDispatcher,
)
from booking_engine.ratelimit import RateLimiter
from booking_engine.store import Store
from booking_engine.tokens import ActionTokenSigner

log = logging.getLogger("booking_engine.runtime")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Engine:
    settings: Settings
    store: Store
    provider: CalendarProvider
    notifier: NotificationDispatcher
    directory: HostDirectory
    availability: AvailabilityService
    guard: ConflictGuard
    signer: ActionTokenSigner
    limiter: RateLimiter
    bookings: BookingManager

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        provider: Optional[CalendarProvider] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> "Engine":
        """Assemble the engine. ``provider`` and ``notifier`` override settings."""
        store = Store(settings.database_path)
        store.initialize()

        provider = provider or get_calendar_provider(settings)
        if notifier is None:
            if settings.notification_webhook_url:
                notifier = WebhookDispatcher(
                    settings.notification_webhook_url,
                    timeout_seconds=settings.notification_timeout_seconds,
                )
            else:
                notifier = LoggingDispatcher()

        secret = settings.token_secret
        if not secret:
            # validate_startup only lets this through in debug mode
            secret = secrets.token_urlsafe(32)

        directory = HostDirectory(store)
        resolver = BusyResolver(provider, timeout_seconds=settings.calendar_timeout_seconds)
        availability = AvailabilityService(directory, resolver, store, clock=clock)
        guard = ConflictGuard(availability, clock=clock)
        signer = ActionTokenSigner(
            secret,
            cancel_ttl=timedelta(hours=settings.cancel_token_ttl_hours),
            reschedule_ttl=timedelta(hours=settings.reschedule_token_ttl_hours),
            clock=clock,
        )
        bookings = BookingManager(
            store,
            directory,
            guard,
            signer,
            provider,
            notifier,
            clock=clock,
            provider_timeout=settings.calendar_timeout_seconds,
            feature_reschedule=settings.feature_reschedule,
            feature_reminders=settings.feature_reminders,
        )
        return cls(
            settings=settings,
            store=store,
            provider=provider,
            notifier=notifier,
            directory=directory,
            availability=availability,
            guard=guard,
            signer=signer,
            limiter=RateLimiter.from_settings(settings, store),
            bookings=bookings,
        )

    async def aclose(self) -> None:
        await self.notifier.aclose()
        await self.provider.aclose()


_engine: Optional[Engine] = None
_lock = threading.Lock()


def get_engine() -> Engine:
    """Return the process engine, building it from settings on first use."""
    global _engine
    if _engine is None:
        with _lock:
            if _engine is None:
                from booking_engine.config import settings

                for warning in settings.validate_startup():
                    log.warning("Config: %s", warning)
                _engine = Engine.build(settings)
                log.info("Booking engine ready (db=%s)", settings.database_path)
    return _engine


def set_engine(engine: Optional[Engine]) -> None:
    global _engine
    with _lock:
        _engine = engine


async def shutdown_engine() -> None:
    global _engine
    with _lock:
        engine, _engine = _engine, None
    if engine is not None:
        await engine.aclose()
        log.info("Booking engine shut down")
