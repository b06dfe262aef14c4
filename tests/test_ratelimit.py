"""Tests for the fixed-window rate limiter."""

import logging
import sqlite3
from unittest.mock import AsyncMock

import pytest

from booking_engine.errors import RateLimited
from booking_engine.ratelimit import (
    ANONYMOUS,
    AUTOMATION,
    RateLimiter,
    RateLimitPolicy,
    fingerprint,
)


class FakeTime:
    def __init__(self, now: float = 1_000_040.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def now():
    return FakeTime()


@pytest.fixture
def limiter(store, now):
    return RateLimiter(
        store,
        {
            ANONYMOUS: RateLimitPolicy(window_seconds=60, quota=3),
            AUTOMATION: RateLimitPolicy(window_seconds=60, quota=100),
        },
        {"anonymous:reschedule": RateLimitPolicy(window_seconds=3600, quota=1)},
        clock=now,
    )


class TestFixedWindow:
    async def test_quota_then_denied(self, limiter):
        for expected_remaining in (2, 1, 0):
            decision = await limiter.check(ANONYMOUS, "10.0.0.1", "book")
            assert decision.allowed
            assert decision.remaining == expected_remaining
        denied = await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        assert not denied.allowed
        assert denied.remaining == 0
        assert denied.limit == 3

    async def test_next_window_allows_again(self, limiter, now):
        for _ in range(4):
            await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        now.now += 60
        assert (await limiter.check(ANONYMOUS, "10.0.0.1", "book")).allowed

    async def test_reset_in_counts_to_window_end(self, limiter, now):
        # 1_000_040 is 20s into a 60s window
        decision = await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        assert decision.reset_in == pytest.approx(40.0)
        assert decision.retry_after == 40

    async def test_callers_are_isolated(self, limiter):
        for _ in range(3):
            await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        assert (await limiter.check(ANONYMOUS, "10.0.0.2", "book")).allowed

    async def test_endpoints_are_isolated(self, limiter):
        for _ in range(3):
            await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        assert (await limiter.check(ANONYMOUS, "10.0.0.1", "availability")).allowed

    async def test_caller_classes_have_own_quota(self, limiter):
        for _ in range(10):
            decision = await limiter.check(AUTOMATION, "agent-key", "book")
        assert decision.allowed
        assert decision.remaining == 90

    async def test_endpoint_override(self, limiter, now):
        assert (await limiter.check(ANONYMOUS, "10.0.0.1", "reschedule")).allowed
        assert not (await limiter.check(ANONYMOUS, "10.0.0.1", "reschedule")).allowed
        now.now += 120  # still inside the hour window
        assert not (await limiter.check(ANONYMOUS, "10.0.0.1", "reschedule")).allowed

    async def test_unconfigured_class_is_unlimited(self, limiter):
        decision = await limiter.check("console", "host-1", "book")
        assert decision.allowed and decision.limit is None


class TestPeekAndEnforce:
    async def test_peek_does_not_count(self, limiter):
        await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        for _ in range(5):
            peeked = await limiter.peek(ANONYMOUS, "10.0.0.1", "book")
        assert peeked.remaining == 2
        assert (await limiter.check(ANONYMOUS, "10.0.0.1", "book")).remaining == 1

    async def test_enforce_raises_rate_limited(self, limiter):
        for _ in range(3):
            await limiter.enforce(ANONYMOUS, "10.0.0.1", "book")
        with pytest.raises(RateLimited) as exc_info:
            await limiter.enforce(ANONYMOUS, "10.0.0.1", "book")
        assert exc_info.value.remaining == 0
        assert exc_info.value.limit == 3
        assert exc_info.value.retry_after >= 1


class TestHousekeeping:
    async def test_purge_removes_expired_windows(self, limiter, store, now):
        await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        now.now += 3600
        assert await limiter.purge_expired() == 1
        assert await limiter.purge_expired() == 0

    async def test_keys_store_fingerprint_not_identity(self, limiter, store):
        await limiter.check(ANONYMOUS, "203.0.113.9", "book")
        with store._connect() as conn:
            keys = [r["key"] for r in conn.execute("SELECT key FROM rate_limit_windows")]
        assert keys and "203.0.113.9" not in keys[0]
        assert fingerprint("203.0.113.9") in keys[0]

    async def test_store_failure_fails_open(self, limiter, store, caplog):
        store.increment_window = AsyncMock(side_effect=sqlite3.OperationalError("disk I/O error"))
        with caplog.at_level(logging.WARNING, logger="booking_engine.ratelimit"):
            decision = await limiter.check(ANONYMOUS, "10.0.0.1", "book")
        assert decision.allowed
        assert "allowing request" in caplog.text


class TestPolicyFromDict:
    def test_rejects_non_positive(self):
        with pytest.raises(ValueError):
            RateLimitPolicy.from_dict({"window_seconds": 0, "quota": 5})

    def test_from_settings(self, store, tmp_path):
        from conftest import make_settings

        limiter = RateLimiter.from_settings(make_settings(tmp_path), store)
        assert limiter.policy_for(ANONYMOUS, "book") == RateLimitPolicy(60, 10)
        assert limiter.policy_for(ANONYMOUS, "reschedule") == RateLimitPolicy(3600, 3)
        assert limiter.policy_for(AUTOMATION, "reschedule") == RateLimitPolicy(60, 200)
