"""FastAPI application: HTTP endpoints for the booking engine.

Endpoints:

  GET   /health                                   Health check
  GET   /hosts/{host_id}/availability             Free slots for one day
  POST  /hosts/{host_id}/bookings                 Book a slot
  GET   /public/{handle}/availability             Free slots, by booking-page handle
  POST  /public/{handle}/bookings                 Book a slot, by booking-page handle
  POST  /bookings/reschedule                      Move a booking (reschedule token)
  POST  /bookings/cancel                          Cancel a booking (cancel token)
  GET   /bookings/{booking_id}                    Host: one booking
  GET   /hosts/{host_id}/bookings                 Host: list bookings
  POST  /bookings/{booking_id}/confirm            Host: confirm a scheduled booking
  POST  /bookings/{booking_id}/host-cancel        Host: cancel a booking
  GET   /hosts/{host_id}/profile                  Scheduling profile
  PUT   /hosts/{host_id}/profile                  Host: save scheduling profile
  GET   /hosts/{host_id}/event-types              Active event types
  POST  /hosts/{host_id}/event-types              Host: create an event type
  PATCH /hosts/{host_id}/event-types/{slug}       Host: update an event type
  POST  /reminders/dispatch                       Agent: send due reminders

Every request passes the rate limiter first; denials are 429 with
``Retry-After`` and ``X-RateLimit-*`` headers.
"""

from __future__ import annotations

# Load .env into os.environ early so libraries that read the environment
# directly (Google client auth) see the same values as Settings.
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Optional

from booking_engine.config import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Body, Depends, FastAPI, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from booking_engine.auth import (
    Caller,
    identify_caller,
    require_automation,
    require_host,
    require_host_identity,
)
from booking_engine.middleware import rate_limit_headers, register_error_handlers
from booking_engine.models import Booking, BookingSource, GuestContact
from booking_engine.ratelimit import ANONYMOUS, AUTOMATION
from booking_engine.runtime import Engine, get_engine, set_engine, shutdown_engine

log = logging.getLogger("booking_engine.app")

_START_TIME = time.time()


# ── Request bodies ─────────────────────────────────────────────


class BookingRequest(BaseModel):
    start: datetime
    end: datetime
    guest: GuestContact
    event_type: Optional[str] = None
    timezone: str = "UTC"
    notes: str = ""


class RescheduleRequest(BaseModel):
    token: str
    start: datetime
    end: datetime
    timezone: Optional[str] = None
    booking_id: Optional[str] = None


class CancelRequest(BaseModel):
    token: str
    booking_id: Optional[str] = None


def _booking_view(booking: Booking) -> dict[str, Any]:
    return booking.model_dump(mode="json", exclude={"consumed_nonces"})


def _source_for(caller: Caller) -> BookingSource:
    if caller.caller_class == AUTOMATION:
        return BookingSource.AUTOMATED_AGENT
    if caller.caller_class == ANONYMOUS:
        return BookingSource.PUBLIC_LINK
    return BookingSource.DIRECT


async def _slots_view(
    host_id: str,
    day: date,
    tz: str,
    duration: Optional[int],
    event_type: Optional[str],
) -> dict[str, Any]:
    result = await get_engine().availability.get_slots(
        host_id, day, timezone_name=tz, duration_min=duration, event_type=event_type
    )
    return {
        "ok": True,
        "slots": [s.to_dict() for s in result.slots],
        "unknown_calendars": result.unknown_calendars,
    }


async def _book(host_id: str, body: BookingRequest, caller: Caller) -> dict[str, Any]:
    receipt = await get_engine().bookings.create(
        host_id,
        body.start,
        body.end,
        body.guest,
        event_type=body.event_type,
        timezone_name=body.timezone,
        notes=body.notes,
        source=_source_for(caller),
    )
    return {"ok": True, "booking": _booking_view(receipt.booking), "tokens": receipt.tokens}


def rate_limit(endpoint: str):
    """Dependency factory: count the request against ``endpoint``'s window."""

    async def _check(
        response: Response,
        caller: Caller = Depends(identify_caller),
    ) -> Caller:
        decision = await get_engine().limiter.enforce(
            caller.caller_class, caller.identity, endpoint
        )
        response.headers.update(
            rate_limit_headers(decision.limit, decision.remaining, decision.retry_after)
        )
        return caller

    return _check


@asynccontextmanager
async def _lifespan(app: FastAPI):
    get_engine()
    yield
    await shutdown_engine()


def create_app(engine: Optional[Engine] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        engine: Pre-built engine to serve; by default one is built from
                settings on first use.
    """
    if engine is not None:
        set_engine(engine)

    app = FastAPI(
        title="Booking Engine",
        description="Multi-tenant appointment booking with conflict-free slots",
        version="0.1.0",
        lifespan=_lifespan,
    )
    register_error_handlers(app)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Availability ───────────────────────────────────────────

    @app.get("/hosts/{host_id}/availability")
    async def availability(
        host_id: str,
        day: date = Query(alias="date"),
        tz: str = "UTC",
        duration: Optional[int] = None,
        event_type: Optional[str] = None,
        caller: Caller = Depends(rate_limit("availability")),
    ) -> dict[str, Any]:
        return await _slots_view(host_id, day, tz, duration, event_type)

    @app.get("/public/{handle}/availability")
    async def public_availability(
        handle: str,
        day: date = Query(alias="date"),
        tz: str = "UTC",
        duration: Optional[int] = None,
        event_type: Optional[str] = None,
        caller: Caller = Depends(rate_limit("availability")),
    ) -> dict[str, Any]:
        profile = await get_engine().directory.get_profile_by_handle(handle)
        return await _slots_view(profile.host_id, day, tz, duration, event_type)

    # ── Guest booking lifecycle ────────────────────────────────

    @app.post("/hosts/{host_id}/bookings", status_code=201)
    async def create_booking(
        host_id: str,
        body: BookingRequest,
        caller: Caller = Depends(rate_limit("book")),
    ) -> dict[str, Any]:
        return await _book(host_id, body, caller)

    @app.post("/public/{handle}/bookings", status_code=201)
    async def public_create_booking(
        handle: str,
        body: BookingRequest,
        caller: Caller = Depends(rate_limit("book")),
    ) -> dict[str, Any]:
        profile = await get_engine().directory.get_profile_by_handle(handle)
        return await _book(profile.host_id, body, caller)

    @app.post("/bookings/reschedule")
    async def reschedule_booking(
        body: RescheduleRequest,
        caller: Caller = Depends(rate_limit("reschedule")),
    ) -> dict[str, Any]:
        receipt = await get_engine().bookings.reschedule(
            body.token,
            body.start,
            body.end,
            timezone_name=body.timezone,
            booking_id=body.booking_id,
        )
        return {"ok": True, "booking": _booking_view(receipt.booking), "tokens": receipt.tokens}

    @app.post("/bookings/cancel")
    async def cancel_booking(
        body: CancelRequest,
        caller: Caller = Depends(rate_limit("cancel")),
    ) -> dict[str, Any]:
        booking = await get_engine().bookings.cancel(body.token, booking_id=body.booking_id)
        return {"ok": True, "booking": _booking_view(booking)}

    # ── Host booking management ────────────────────────────────

    @app.get("/bookings/{booking_id}")
    async def get_booking(
        booking_id: str,
        identity: str = Depends(require_host_identity),
        caller: Caller = Depends(rate_limit("host")),
    ) -> dict[str, Any]:
        booking = await get_engine().bookings.get_for_host(identity, booking_id)
        return {"ok": True, "booking": _booking_view(booking)}

    @app.get("/hosts/{host_id}/bookings")
    async def list_bookings(
        host_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_canceled: bool = True,
        identity: str = Depends(require_host_identity),
        caller: Caller = Depends(rate_limit("host")),
    ) -> dict[str, Any]:
        require_host(identity, host_id)
        bookings = await get_engine().bookings.list_for_host(
            host_id, start, end, include_canceled=include_canceled
        )
        return {"ok": True, "bookings": [_booking_view(b) for b in bookings]}

    @app.post("/bookings/{booking_id}/confirm")
    async def confirm_booking(
        booking_id: str,
        identity: str = Depends(require_host_identity),
        caller: Caller = Depends(rate_limit("host")),
    ) -> dict[str, Any]:
        booking = await get_engine().bookings.confirm(identity, booking_id)
        return {"ok": True, "booking": _booking_view(booking)}

    @app.post("/bookings/{booking_id}/host-cancel")
    async def host_cancel_booking(
        booking_id: str,
        identity: str = Depends(require_host_identity),
        caller: Caller = Depends(rate_limit("host")),
    ) -> dict[str, Any]:
        booking = await get_engine().bookings.cancel_by_host(identity, booking_id)
        return {"ok": True, "booking": _booking_view(booking)}

    # ── Host profile & event types ─────────────────────────────

    @app.get("/hosts/{host_id}/profile")
    async def get_profile(
        host_id: str,
        caller: Caller = Depends(rate_limit("profile")),
    ) -> dict[str, Any]:
        profile = await get_engine().directory.get_profile(host_id)
        return {"ok": True, "profile": profile.model_dump(mode="json")}

    @app.put("/hosts/{host_id}/profile")
    async def put_profile(
        host_id: str,
        body: dict[str, Any] = Body(...),
        identity: str = Depends(require_host_identity),
        caller: Caller = Depends(rate_limit("host")),
    ) -> dict[str, Any]:
        require_host(identity, host_id)
        profile = await get_engine().directory.upsert_profile(host_id, body)
        return {"ok": True, "profile": profile.model_dump(mode="json")}

    @app.get("/hosts/{host_id}/event-types")
    async def list_event_types(
        host_id: str,
        caller: Caller = Depends(rate_limit("profile")),
    ) -> dict[str, Any]:
        event_types = await get_engine().directory.list_event_types(host_id)
        visible = [
            et for et in event_types
            if et.is_active or caller.host_id == host_id
        ]
        return {"ok": True, "event_types": [et.model_dump(mode="json") for et in visible]}

    @app.post("/hosts/{host_id}/event-types", status_code=201)
    async def create_event_type(
        host_id: str,
        body: dict[str, Any] = Body(...),
        identity: str = Depends(require_host_identity),
        caller: Caller = Depends(rate_limit("host")),
    ) -> dict[str, Any]:
        require_host(identity, host_id)
        event_type = await get_engine().directory.create_event_type(host_id, body)
        return {"ok": True, "event_type": event_type.model_dump(mode="json")}

    @app.patch("/hosts/{host_id}/event-types/{slug}")
    async def update_event_type(
        host_id: str,
        slug: str,
        body: dict[str, Any] = Body(...),
        identity: str = Depends(require_host_identity),
        caller: Caller = Depends(rate_limit("host")),
    ) -> dict[str, Any]:
        require_host(identity, host_id)
        event_type = await get_engine().directory.update_event_type(host_id, slug, body)
        return {"ok": True, "event_type": event_type.model_dump(mode="json")}

    # ── Reminders ──────────────────────────────────────────────

    @app.post("/reminders/dispatch")
    async def dispatch_reminders(
        agent: Caller = Depends(require_automation),
        caller: Caller = Depends(rate_limit("reminders")),
    ) -> dict[str, Any]:
        sent = await get_engine().bookings.send_due_reminders()
        return {"ok": True, "sent": sent}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "booking_engine.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
