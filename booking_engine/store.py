"""SQLite persistence for profiles, event types, bookings and rate-limit windows.

The store is the source of truth. Two properties carry the booking engine's
concurrency guarantees:

* a partial unique index over ``(host_id, start_utc)`` for non-canceled
  bookings, so the first writer of a start instant wins and the second gets
  ``DuplicateSlotError``;
* versioned conditional updates (``WHERE id = ? AND version = ?``), so a
  writer that read a stale booking loses instead of overwriting.

Each operation opens its own connection; blocking calls run in a worker thread
so the event loop keeps serving other requests.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import partial
from typing import Any, Iterator, Optional

from booking_engine.calendar_providers.base import TimeSlot
from booking_engine.models import Booking, EventType, SchedulingProfile

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    host_id TEXT PRIMARY KEY,
    handle_lower TEXT NOT NULL UNIQUE,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS event_types (
    id TEXT PRIMARY KEY,
    host_id TEXT NOT NULL,
    slug TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (host_id, slug)
);

CREATE TABLE IF NOT EXISTS bookings (
    id TEXT PRIMARY KEY,
    host_id TEXT NOT NULL,
    event_type_id TEXT,
    start_utc TEXT NOT NULL,
    end_utc TEXT NOT NULL,
    status TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_bookings_active_start
    ON bookings(host_id, start_utc) WHERE status != 'canceled';
CREATE INDEX IF NOT EXISTS idx_bookings_host_window ON bookings(host_id, start_utc, end_utc);
CREATE INDEX IF NOT EXISTS idx_bookings_status ON bookings(status);

CREATE TABLE IF NOT EXISTS rate_limit_windows (
    key TEXT PRIMARY KEY,
    count INTEGER NOT NULL,
    expires_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rate_limit_expiry ON rate_limit_windows(expires_at);
"""


class DuplicateSlotError(Exception):
    """An active booking already holds this host's start instant."""


class DuplicateKeyError(Exception):
    """A unique handle or slug is already taken."""


def to_db_time(dt: datetime) -> str:
    """Fixed-width UTC text so lexical order matches time order."""
    if dt.tzinfo is None:
        raise ValueError("naive datetime cannot be stored")
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _now() -> str:
    return to_db_time(datetime.now(timezone.utc))


class Store:
    def __init__(self, db_path: str = "data/bookings.db") -> None:
        if db_path == ":memory:":
            raise ValueError("Store needs a file path; each operation opens its own connection")
        self.db_path = db_path

    def initialize(self) -> None:
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        logger.info("Booking store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout=5000")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    async def _run(self, func, *args, **kwargs) -> Any:
        """Run a blocking store call in a worker thread."""
        return await asyncio.to_thread(partial(func, *args, **kwargs))

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def _upsert_profile(self, profile: SchedulingProfile) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profiles (host_id, handle_lower, data, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(host_id) DO UPDATE SET
                        handle_lower = excluded.handle_lower,
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (
                        profile.host_id,
                        profile.handle.lower(),
                        profile.model_dump_json(),
                        _now(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateKeyError(f"handle {profile.handle!r} is taken") from exc

    async def upsert_profile(self, profile: SchedulingProfile) -> None:
        await self._run(self._upsert_profile, profile)

    def _get_profile(self, column: str, value: str) -> Optional[SchedulingProfile]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT data FROM profiles WHERE {column} = ?", (value,)
            ).fetchone()
        return SchedulingProfile.model_validate_json(row["data"]) if row else None

    async def get_profile(self, host_id: str) -> Optional[SchedulingProfile]:
        return await self._run(self._get_profile, "host_id", host_id)

    async def get_profile_by_handle(self, handle: str) -> Optional[SchedulingProfile]:
        return await self._run(self._get_profile, "handle_lower", handle.lower())

    # ------------------------------------------------------------------
    # Event types
    # ------------------------------------------------------------------

    def _insert_event_type(self, event_type: EventType) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO event_types (id, host_id, slug, data, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        event_type.id,
                        event_type.host_id,
                        event_type.slug,
                        event_type.model_dump_json(),
                        _now(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateKeyError(f"slug {event_type.slug!r} is taken") from exc

    async def insert_event_type(self, event_type: EventType) -> None:
        await self._run(self._insert_event_type, event_type)

    def _update_event_type(self, event_type: EventType) -> None:
        # slug is not part of the SET list; it never changes after insert
        with self._connect() as conn:
            conn.execute(
                "UPDATE event_types SET data = ?, updated_at = ? WHERE id = ?",
                (event_type.model_dump_json(), _now(), event_type.id),
            )

    async def update_event_type(self, event_type: EventType) -> None:
        await self._run(self._update_event_type, event_type)

    def _get_event_type(self, host_id: str, slug: str) -> Optional[EventType]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM event_types WHERE host_id = ? AND slug = ?",
                (host_id, slug),
            ).fetchone()
        return EventType.model_validate_json(row["data"]) if row else None

    async def get_event_type(self, host_id: str, slug: str) -> Optional[EventType]:
        return await self._run(self._get_event_type, host_id, slug)

    def _get_event_type_by_id(self, event_type_id: str) -> Optional[EventType]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM event_types WHERE id = ?", (event_type_id,)
            ).fetchone()
        return EventType.model_validate_json(row["data"]) if row else None

    async def get_event_type_by_id(self, event_type_id: str) -> Optional[EventType]:
        return await self._run(self._get_event_type_by_id, event_type_id)

    def _list_event_types(self, host_id: str) -> list[EventType]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT data FROM event_types WHERE host_id = ? ORDER BY slug",
                (host_id,),
            ).fetchall()
        return [EventType.model_validate_json(r["data"]) for r in rows]

    async def list_event_types(self, host_id: str) -> list[EventType]:
        return await self._run(self._list_event_types, host_id)

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    @staticmethod
    def _booking_from_row(row: sqlite3.Row) -> Booking:
        booking = Booking.model_validate_json(row["data"])
        booking.version = row["version"]
        return booking

    def _insert_booking(self, booking: Booking) -> Booking:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO bookings (id, host_id, event_type_id, start_utc, end_utc,
                                          status, version, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        booking.id,
                        booking.host_id,
                        booking.event_type_id,
                        to_db_time(booking.start),
                        to_db_time(booking.end),
                        booking.status.value,
                        booking.model_dump_json(),
                        to_db_time(booking.created_at),
                        to_db_time(booking.updated_at),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateSlotError(
                f"host {booking.host_id} already has a booking at {booking.start.isoformat()}"
            ) from exc
        return booking.model_copy(update={"version": 0})

    async def insert_booking(self, booking: Booking) -> Booking:
        """Persist a new booking. Raises ``DuplicateSlotError`` on a taken start."""
        return await self._run(self._insert_booking, booking)

    def _update_booking(self, booking: Booking, expected_version: int) -> Optional[Booking]:
        stored = booking.model_copy(update={"version": expected_version + 1})
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE bookings
                    SET start_utc = ?, end_utc = ?, status = ?, data = ?,
                        version = version + 1, updated_at = ?
                    WHERE id = ? AND version = ?
                    """,
                    (
                        to_db_time(stored.start),
                        to_db_time(stored.end),
                        stored.status.value,
                        stored.model_dump_json(),
                        to_db_time(stored.updated_at),
                        stored.id,
                        expected_version,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateSlotError(
                f"host {booking.host_id} already has a booking at {booking.start.isoformat()}"
            ) from exc
        if cursor.rowcount == 0:
            return None
        return stored

    async def update_booking(self, booking: Booking, expected_version: int) -> Optional[Booking]:
        """Write ``booking`` only if the stored row is still at ``expected_version``.

        Returns the stored booking, or ``None`` when another writer got there
        first. Raises ``DuplicateSlotError`` if the new start is taken.
        """
        return await self._run(self._update_booking, booking, expected_version)

    def _get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, version FROM bookings WHERE id = ?", (booking_id,)
            ).fetchone()
        return self._booking_from_row(row) if row else None

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return await self._run(self._get_booking, booking_id)

    def _list_bookings(
        self,
        host_id: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
        active_only: bool,
    ) -> list[Booking]:
        clauses: list[str] = []
        params: list[Any] = []
        if host_id is not None:
            clauses.append("host_id = ?")
            params.append(host_id)
        if end is not None:
            clauses.append("start_utc < ?")
            params.append(to_db_time(end))
        if start is not None:
            clauses.append("end_utc > ?")
            params.append(to_db_time(start))
        if active_only:
            clauses.append("status != 'canceled'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT data, version FROM bookings {where} ORDER BY start_utc", params
            ).fetchall()
        return [self._booking_from_row(r) for r in rows]

    async def list_bookings(
        self,
        host_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        active_only: bool = False,
    ) -> list[Booking]:
        """Bookings overlapping ``[start, end)``, ordered by start."""
        return await self._run(self._list_bookings, host_id, start, end, active_only)

    async def list_active_intervals(
        self,
        host_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> list[TimeSlot]:
        bookings = await self.list_bookings(host_id, start, end, active_only=True)
        return [
            TimeSlot(start=b.start, end=b.end)
            for b in bookings
            if b.id != exclude_booking_id
        ]

    # ------------------------------------------------------------------
    # Rate-limit windows
    # ------------------------------------------------------------------

    def _increment_window(self, key: str, expires_at: float) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                INSERT INTO rate_limit_windows (key, count, expires_at) VALUES (?, 1, ?)
                ON CONFLICT(key) DO UPDATE SET count = count + 1
                RETURNING count
                """,
                (key, expires_at),
            ).fetchall()
        return rows[0]["count"]

    async def increment_window(self, key: str, expires_at: float) -> int:
        """Atomically bump a window counter and return the new count."""
        return await self._run(self._increment_window, key, expires_at)

    def _read_window(self, key: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count FROM rate_limit_windows WHERE key = ?", (key,)
            ).fetchone()
        return row["count"] if row else 0

    def _purge_windows(self, now: float) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM rate_limit_windows WHERE expires_at <= ?", (now,)
            )
        return cursor.rowcount

    async def read_window(self, key: str) -> int:
        return await self._run(self._read_window, key)

    async def purge_windows(self, now: float) -> int:
        """Delete expired windows; returns how many were removed."""
        return await self._run(self._purge_windows, now)
