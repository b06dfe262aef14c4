"""Host directory: scheduling profiles and event types.

Profiles and event types are written only by their host (the HTTP layer checks
the pre-verified host identity); everything else reads them.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Optional

from pydantic import ValidationError

from booking_engine.errors import InputValidationError, NotFoundError
from booking_engine.models import EffectiveSchedule, EventType, SchedulingProfile
from booking_engine.store import DuplicateKeyError, Store

log = logging.getLogger("booking_engine.hosts")

_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:50]


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))


class HostDirectory:
    def __init__(self, store: Store) -> None:
        self._store = store

    # ── Profiles ───────────────────────────────────────────────

    async def upsert_profile(self, host_id: str, data: dict[str, Any]) -> SchedulingProfile:
        try:
            profile = SchedulingProfile(**{**data, "host_id": host_id})
        except ValidationError as exc:
            raise InputValidationError(_validation_message(exc)) from exc
        if not _HANDLE_PATTERN.match(profile.handle):
            raise InputValidationError(f"Invalid handle {profile.handle!r}")
        try:
            await self._store.upsert_profile(profile)
        except DuplicateKeyError as exc:
            raise InputValidationError(str(exc)) from exc
        log.info("Profile saved for host %s (handle=%s)", host_id, profile.handle)
        return profile

    async def get_profile(self, host_id: str) -> SchedulingProfile:
        profile = await self._store.get_profile(host_id)
        if profile is None:
            raise NotFoundError(f"No scheduling profile for host {host_id!r}")
        return profile

    async def get_profile_by_handle(self, handle: str) -> SchedulingProfile:
        profile = await self._store.get_profile_by_handle(handle)
        if profile is None:
            raise NotFoundError("Booking page not found")
        return profile

    # ── Event types ────────────────────────────────────────────

    async def create_event_type(self, host_id: str, data: dict[str, Any]) -> EventType:
        await self.get_profile(host_id)
        name = str(data.get("name", "")).strip()
        if not name:
            raise InputValidationError("Event type name cannot be empty")
        slug = slugify(data.get("slug") or name)
        if not slug:
            raise InputValidationError("Event type slug cannot be empty")
        try:
            event_type = EventType(
                **{**data, "id": uuid.uuid4().hex, "host_id": host_id, "slug": slug, "name": name}
            )
        except ValidationError as exc:
            raise InputValidationError(_validation_message(exc)) from exc
        try:
            await self._store.insert_event_type(event_type)
        except DuplicateKeyError as exc:
            raise InputValidationError(str(exc)) from exc
        log.info("Event type %s created for host %s", slug, host_id)
        return event_type

    async def update_event_type(
        self, host_id: str, slug: str, changes: dict[str, Any]
    ) -> EventType:
        existing = await self.get_event_type(host_id, slug, include_inactive=True)
        if "slug" in changes and changes["slug"] != existing.slug:
            raise InputValidationError("Event type slug cannot be changed")
        if "name" in changes and not str(changes["name"]).strip():
            raise InputValidationError("Name cannot be empty")
        protected = {"id", "host_id", "slug"}
        merged = {
            **existing.model_dump(),
            **{k: v for k, v in changes.items() if k not in protected},
        }
        try:
            updated = EventType(**merged)
        except ValidationError as exc:
            raise InputValidationError(_validation_message(exc)) from exc
        await self._store.update_event_type(updated)
        return updated

    async def get_event_type(
        self, host_id: str, slug: str, *, include_inactive: bool = False
    ) -> EventType:
        event_type = await self._store.get_event_type(host_id, slug)
        if event_type is None or (not event_type.is_active and not include_inactive):
            raise NotFoundError(f"Event type {slug!r} not found")
        return event_type

    async def list_event_types(self, host_id: str) -> list[EventType]:
        return await self._store.list_event_types(host_id)

    # ── Resolution ─────────────────────────────────────────────

    async def effective_schedule(
        self, host_id: str, event_type_slug: Optional[str] = None
    ) -> EffectiveSchedule:
        profile = await self.get_profile(host_id)
        event_type = None
        if event_type_slug:
            event_type = await self.get_event_type(host_id, event_type_slug)
        return EffectiveSchedule.resolve(profile, event_type)

    async def schedule_for_booking(
        self, host_id: str, event_type_id: Optional[str]
    ) -> EffectiveSchedule:
        """Schedule a booking was made under, even if its event type was deactivated since."""
        profile = await self.get_profile(host_id)
        event_type = None
        if event_type_id:
            event_type = await self._store.get_event_type_by_id(event_type_id)
        return EffectiveSchedule.resolve(profile, event_type)
