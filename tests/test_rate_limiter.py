"""Tests for the per-client sliding-window rate limiter."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select

from database.models import RateWindowEntry
from database.repositories import RateWindowRepository
from database.session import session_scope
from pipeline.rate_limiter import HOURLY_LIMIT_MESSAGE, MINUTE_LIMIT_MESSAGE, RateLimiter

NOW = datetime(2024, 5, 1, 12, 0, 0)


async def _entry_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(RateWindowEntry.id)))).scalar_one()


class TestMinuteWindow:
    async def test_eleventh_request_in_a_minute_is_rejected(self, session_factory, settings) -> None:
        limiter = RateLimiter(session_factory, settings)
        for i in range(10):
            decision = await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=i))
            assert decision.allowed

        decision = await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=10))
        assert not decision.allowed
        assert decision.reason == MINUTE_LIMIT_MESSAGE
        assert decision.window == "minute"
        assert decision.retry_after == 60

    async def test_rejections_are_not_recorded(self, session_factory, settings) -> None:
        limiter = RateLimiter(session_factory, settings)
        for i in range(12):
            await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=i))
        assert await _entry_count(session_factory) == 10

    async def test_window_slides(self, session_factory, settings) -> None:
        limiter = RateLimiter(session_factory, settings)
        for i in range(10):
            await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=i))

        later = await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=61))
        assert later.allowed

    async def test_clients_are_independent(self, session_factory, settings) -> None:
        limiter = RateLimiter(session_factory, settings)
        for i in range(10):
            await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=i))

        assert not (await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=11))).allowed
        assert (await limiter.admit("5.6.7.8", now=NOW + timedelta(seconds=11))).allowed


class TestHourWindow:
    async def test_hundred_and_first_request_in_an_hour_is_rejected(self, session_factory, settings) -> None:
        limiter = RateLimiter(session_factory, settings)
        for i in range(100):
            decision = await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=35 * i))
            assert decision.allowed, f"request {i + 1} should be admitted"

        decision = await limiter.admit("1.2.3.4", now=NOW + timedelta(seconds=3500))
        assert not decision.allowed
        assert decision.reason == HOURLY_LIMIT_MESSAGE
        assert decision.window == "hour"

    async def test_hour_limit_reported_before_minute_limit(self, session_factory, settings) -> None:
        async with session_scope(session_factory) as db:
            repo = RateWindowRepository(db)
            for i in range(100):
                await repo.add("1.2.3.4", NOW - timedelta(milliseconds=100 * i))

        decision = await RateLimiter(session_factory, settings).admit("1.2.3.4", now=NOW)
        assert decision.reason == HOURLY_LIMIT_MESSAGE


class TestRetention:
    async def test_old_entries_are_purged(self, session_factory, settings) -> None:
        async with session_scope(session_factory) as db:
            repo = RateWindowRepository(db)
            for i in range(5):
                await repo.add("9.9.9.9", NOW - timedelta(hours=3, minutes=i))

        await RateLimiter(session_factory, settings).admit("1.2.3.4", now=NOW)
        assert await _entry_count(session_factory) == 1

    async def test_disabled_limiter_admits_everything(self, session_factory, settings) -> None:
        limiter = RateLimiter(session_factory, settings.model_copy(update={"RATE_LIMIT_ENABLED": False}))
        for _ in range(15):
            assert (await limiter.admit("1.2.3.4", now=NOW)).allowed
        assert await _entry_count(session_factory) == 0
