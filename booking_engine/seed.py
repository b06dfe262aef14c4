"""Seed host profiles and event types from a JSONL file.

Each line is one JSON object with a ``kind``:

    {"kind": "profile", "host_id": "h1", "handle": "ada", "timezone": "Europe/Paris", ...}
    {"kind": "event_type", "host_id": "h1", "name": "Intro call", "duration_min": 15}

Re-running the same file updates what is already there.

Usage:
    python -m booking_engine.seed data/hosts.jsonl --db data/bookings.db
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from booking_engine.errors import BookingError
from booking_engine.hosts import HostDirectory, slugify
from booking_engine.store import Store

KINDS = ("profile", "event_type")


def load_seed_jsonl(path: str | Path) -> list[dict[str, Any]]:
    """Read seed records, skipping blank lines."""
    path = Path(path)
    records: list[dict[str, Any]] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        record = json.loads(line)
        if record.get("kind") not in KINDS:
            raise ValueError(f"{path}:{lineno}: kind must be one of {KINDS}")
        if not record.get("host_id"):
            raise ValueError(f"{path}:{lineno}: host_id is required")
        records.append(record)
    return records


async def seed(records: list[dict[str, Any]], directory: HostDirectory) -> dict[str, int]:
    """Apply records in order. Profiles should precede their event types."""
    counts = {kind: 0 for kind in KINDS}
    for record in records:
        data = {k: v for k, v in record.items() if k not in ("kind", "host_id")}
        host_id = record["host_id"]
        if record["kind"] == "profile":
            await directory.upsert_profile(host_id, data)
        else:
            slug = slugify(data.get("slug") or data.get("name", ""))
            existing = {et.slug for et in await directory.list_event_types(host_id)}
            if slug in existing:
                data.pop("slug", None)
                await directory.update_event_type(host_id, slug, data)
            else:
                await directory.create_event_type(host_id, data)
        counts[record["kind"]] += 1
    return counts


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Load host profiles and event types from JSONL",
        prog="python -m booking_engine.seed",
    )
    parser.add_argument("jsonl_path", help="Path to the seed JSONL file")
    parser.add_argument("--db", help="SQLite database path (default: DATABASE_PATH setting)")
    args = parser.parse_args(argv)

    if args.db:
        db_path = args.db
    else:
        from booking_engine.config import settings

        db_path = settings.database_path

    try:
        records = load_seed_jsonl(args.jsonl_path)
    except (OSError, ValueError) as exc:
        print(f"Cannot read seed file: {exc}", file=sys.stderr)
        return 1

    store = Store(db_path)
    store.initialize()
    try:
        counts = asyncio.run(seed(records, HostDirectory(store)))
    except BookingError as exc:
        print(f"Seed failed: {exc.message}", file=sys.stderr)
        return 1

    print(
        f"Seeded {counts['profile']} profile(s) and {counts['event_type']} event type(s) "
        f"into {db_path}",
        file=sys.stderr,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
