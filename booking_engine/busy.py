"""Busy-interval resolution across a host's attached calendars.

The resolver asks the configured ``CalendarProvider`` for busy time, bounded by
a short timeout, and folds everything into one sorted, merged list. A calendar
that cannot answer contributes no busy time and is listed in
``BusyResult.unknown`` so callers can surface the degradation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from booking_engine.calendar_providers.base import CalendarProvider, TimeSlot
from booking_engine.errors import CalendarProviderUnavailable

log = logging.getLogger("booking_engine.busy")


def merge_intervals(intervals: Iterable[TimeSlot]) -> list[TimeSlot]:
    """Sort by start and fold overlapping or touching intervals."""
    merged: list[TimeSlot] = []
    for interval in sorted(intervals):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = TimeSlot(start=last.start, end=interval.end)
            continue
        merged.append(interval)
    return merged


@dataclass
class BusyResult:
    intervals: list[TimeSlot] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.unknown)


class BusyResolver:
    """Collects and merges busy intervals from external calendars."""

    def __init__(self, provider: CalendarProvider, timeout_seconds: float = 5.0) -> None:
        self._provider = provider
        self._timeout = timeout_seconds

    async def resolve(
        self,
        calendar_ids: list[str],
        start: datetime,
        end: datetime,
        ignore: Iterable[TimeSlot] = (),
    ) -> BusyResult:
        """Return merged busy time for ``calendar_ids`` within ``[start, end)``.

        Raw intervals exactly equal to one in ``ignore`` are dropped before
        merging; a booking being moved passes its own mirrored interval here.
        """
        if not calendar_ids:
            return BusyResult()

        try:
            response = await asyncio.wait_for(
                self._provider.query_busy(calendar_ids, start, end),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            log.warning(
                "Busy lookup timed out after %.1fs for %d calendar(s); treating as free",
                self._timeout,
                len(calendar_ids),
            )
            return BusyResult(unknown=list(calendar_ids))
        except CalendarProviderUnavailable as exc:
            log.warning("Busy lookup failed (%s); treating as free", exc)
            return BusyResult(unknown=list(calendar_ids))
        except Exception as exc:
            log.warning(
                "Busy lookup raised %s (%s); treating as free", type(exc).__name__, exc
            )
            return BusyResult(unknown=list(calendar_ids))

        skip = set(ignore)
        collected: list[TimeSlot] = []
        unknown: list[str] = []
        for cid in calendar_ids:
            busy = response.get(cid)
            if busy is None:
                unknown.append(cid)
                continue
            collected.extend(b for b in busy if b not in skip)

        if unknown:
            log.warning("No busy data from calendar(s) %s; treating as free", unknown)

        return BusyResult(intervals=merge_intervals(collected), unknown=unknown)
