"""Fixed-window rate limiting, backed by the store.

Windows are keyed by ``(caller class, caller fingerprint, endpoint, bucket)``
where ``bucket = floor(now / window_seconds)``. Caller classes carry their own
window and quota (trusted automation > interactive console > anonymous), and
individual endpoints can override that per class.

The limiter fails open: if the store cannot be reached the request is allowed
and a warning is logged. Booking correctness never depends on it.
"""

from __future__ import annotations

import hashlib
import logging
import math
import sqlite3
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from booking_engine.errors import RateLimited

if TYPE_CHECKING:
    from booking_engine.config import Settings
    from booking_engine.store import Store

log = logging.getLogger("booking_engine.ratelimit")

AUTOMATION = "automation"
CONSOLE = "console"
ANONYMOUS = "anonymous"
CALLER_CLASSES = (AUTOMATION, CONSOLE, ANONYMOUS)


@dataclass(frozen=True)
class RateLimitPolicy:
    window_seconds: int
    quota: int

    @classmethod
    def from_dict(cls, data: dict[str, int]) -> "RateLimitPolicy":
        policy = cls(window_seconds=int(data["window_seconds"]), quota=int(data["quota"]))
        if policy.window_seconds <= 0 or policy.quota <= 0:
            raise ValueError(f"window_seconds and quota must be positive: {data}")
        return policy


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: Optional[int]  # None when the caller class is unlimited
    reset_in: float  # seconds until the current window ends
    limit: Optional[int]

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_in))


def fingerprint(identity: str) -> str:
    """Stable, non-reversible short form of an origin or credential."""
    return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:24]


class RateLimiter:
    def __init__(
        self,
        store: "Store",
        policies: dict[str, RateLimitPolicy],
        overrides: Optional[dict[str, RateLimitPolicy]] = None,
        *,
        clock: Callable[[], float] = time.time,
        purge_every: int = 500,
    ) -> None:
        self._store = store
        self._policies = dict(policies)
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._purge_every = purge_every
        self._checks = 0

    @classmethod
    def from_settings(cls, settings: "Settings", store: "Store") -> "RateLimiter":
        return cls(
            store,
            {name: RateLimitPolicy.from_dict(p) for name, p in settings.rate_limits.items()},
            {key: RateLimitPolicy.from_dict(p) for key, p in settings.rate_limit_overrides.items()},
        )

    def policy_for(self, caller_class: str, endpoint: str) -> Optional[RateLimitPolicy]:
        return self._overrides.get(f"{caller_class}:{endpoint}") or self._policies.get(caller_class)

    def _window(self, policy: RateLimitPolicy, now: float) -> tuple[int, float]:
        bucket = math.floor(now / policy.window_seconds)
        window_end = (bucket + 1) * policy.window_seconds
        return bucket, window_end

    @staticmethod
    def _key(caller_class: str, identity: str, endpoint: str, bucket: int) -> str:
        return f"{caller_class}|{fingerprint(identity)}|{endpoint}|{bucket}"

    async def check(self, caller_class: str, identity: str, endpoint: str) -> RateLimitDecision:
        """Count this request against its window and report whether it is allowed."""
        policy = self.policy_for(caller_class, endpoint)
        if policy is None:
            return RateLimitDecision(allowed=True, remaining=None, reset_in=0.0, limit=None)

        now = self._clock()
        bucket, window_end = self._window(policy, now)
        key = self._key(caller_class, identity, endpoint, bucket)
        reset_in = window_end - now

        try:
            count = await self._store.increment_window(key, window_end + policy.window_seconds)
        except (sqlite3.Error, OSError) as exc:
            log.warning("Rate limiter store unavailable (%s); allowing request", exc)
            return RateLimitDecision(
                allowed=True, remaining=policy.quota, reset_in=reset_in, limit=policy.quota
            )

        await self._maybe_purge(now)

        allowed = count <= policy.quota
        if not allowed:
            log.info(
                "Rate limit exceeded: class=%s endpoint=%s count=%d quota=%d",
                caller_class, endpoint, count, policy.quota,
            )
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, policy.quota - count),
            reset_in=reset_in,
            limit=policy.quota,
        )

    async def peek(self, caller_class: str, identity: str, endpoint: str) -> RateLimitDecision:
        """Current window state without counting a request."""
        policy = self.policy_for(caller_class, endpoint)
        if policy is None:
            return RateLimitDecision(allowed=True, remaining=None, reset_in=0.0, limit=None)

        now = self._clock()
        bucket, window_end = self._window(policy, now)
        try:
            count = await self._store.read_window(
                self._key(caller_class, identity, endpoint, bucket)
            )
        except (sqlite3.Error, OSError) as exc:
            log.warning("Rate limiter store unavailable (%s); reporting full quota", exc)
            count = 0
        return RateLimitDecision(
            allowed=count < policy.quota,
            remaining=max(0, policy.quota - count),
            reset_in=window_end - now,
            limit=policy.quota,
        )

    async def enforce(self, caller_class: str, identity: str, endpoint: str) -> RateLimitDecision:
        """``check`` that raises ``RateLimited`` instead of returning a denial."""
        decision = await self.check(caller_class, identity, endpoint)
        if not decision.allowed:
            raise RateLimited(
                retry_after=decision.retry_after,
                limit=decision.limit or 0,
                remaining=0,
            )
        return decision

    async def purge_expired(self) -> int:
        try:
            removed = await self._store.purge_windows(self._clock())
        except (sqlite3.Error, OSError) as exc:
            log.warning("Rate limit purge failed: %s", exc)
            return 0
        if removed:
            log.debug("Purged %d expired rate-limit windows", removed)
        return removed

    async def _maybe_purge(self, now: float) -> None:
        self._checks += 1
        if self._checks % self._purge_every == 0:
            await self.purge_expired()
