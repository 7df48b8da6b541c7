"""Tests for the request pipeline, end to end over a real SQLite store."""

from __future__ import annotations

from sqlalchemy import select

from core.exceptions import GENERIC_DATABASE_MESSAGE, GENERIC_FAILURE_MESSAGE, PersistenceError
from database.models import RequestRecord
from database.store import Store
from pipeline.pipeline import FailureCategory
from pipeline.rate_limiter import MINUTE_LIMIT_MESSAGE
from stats.aggregator import StatisticsAggregator

from fakes import IMG_COUNT, ExplodingFetcher, SpyFetcher, error_result, page_result


class FailingStore(Store):
    async def record_request(self, *args, **kwargs):
        raise PersistenceError("Failed to store result in database", detail="disk full")


async def _request_rows(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(RequestRecord))).scalars().all()


class TestSuccessPath:
    async def test_first_request_fetches_and_counts(self, make_pipeline, spy_fetcher, session_factory) -> None:
        result = await make_pipeline(spy_fetcher).run("http://Example.com", "IMG", client_id="1.1.1.1")

        assert result.success
        assert result.cached is False
        assert result.summary.url == "http://example.com/"
        assert result.summary.tag == "img"
        assert result.summary.count == IMG_COUNT
        assert result.summary.fetch_time_ms == 120
        assert result.statistics.domain_url_count == 1
        assert result.statistics.domain_avg_fetch_time_ms == 120
        assert result.statistics.domain_tag_total == IMG_COUNT
        assert result.statistics.global_tag_total == IMG_COUNT
        assert spy_fetcher.calls == ["http://example.com/"]

        rows = await _request_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].count == IMG_COUNT
        assert rows[0].error_message is None
        assert result.summary.timestamp == rows[0].created_at

    async def test_second_request_is_served_from_cache(self, make_pipeline, spy_fetcher, session_factory) -> None:
        pipeline = make_pipeline(spy_fetcher)
        first = await pipeline.run("http://example.com/", "img", client_id="1.1.1.1")
        second = await pipeline.run("http://example.com/", "img", client_id="1.1.1.1")

        assert len(spy_fetcher.calls) == 1
        assert second.cached is True
        assert second.summary.count == first.summary.count
        assert second.summary.timestamp == first.summary.timestamp
        assert second.statistics.domain_tag_total == IMG_COUNT
        assert len(await _request_rows(session_factory)) == 1

    async def test_bypass_cache_fetches_again(self, make_pipeline, spy_fetcher, session_factory) -> None:
        pipeline = make_pipeline(spy_fetcher)
        await pipeline.run("http://example.com/", "img", client_id="1.1.1.1")
        again = await pipeline.run("http://example.com/", "img", bypass_cache=True, client_id="1.1.1.1")

        assert len(spy_fetcher.calls) == 2
        assert again.cached is False
        assert again.statistics.domain_tag_total == 2 * IMG_COUNT
        assert again.statistics.domain_url_count == 1
        assert len(await _request_rows(session_factory)) == 2

    async def test_different_tag_is_not_a_cache_hit(self, make_pipeline, spy_fetcher) -> None:
        pipeline = make_pipeline(spy_fetcher)
        await pipeline.run("http://example.com/", "img", client_id="1.1.1.1")
        other = await pipeline.run("http://example.com/", "div", client_id="1.1.1.1")

        assert len(spy_fetcher.calls) == 2
        assert other.cached is False
        assert other.summary.count == 1


class TestFailurePaths:
    async def test_private_host_rejected_before_fetch(self, make_pipeline, spy_fetcher, session_factory) -> None:
        result = await make_pipeline(spy_fetcher).run("http://127.0.0.1/", "div", client_id="1.1.1.1")

        assert not result.success
        assert result.failure is FailureCategory.INVALID_INPUT
        assert result.summary is None
        assert "not allowed" in result.error
        assert spy_fetcher.calls == []
        assert await _request_rows(session_factory) == []

    async def test_numeric_loopback_alias_rejected_before_fetch(self, make_pipeline, spy_fetcher, session_factory) -> None:
        result = await make_pipeline(spy_fetcher).run("http://2130706433/", "img", client_id="1.1.1.1")

        assert result.failure is FailureCategory.INVALID_INPUT
        assert spy_fetcher.calls == []
        assert await _request_rows(session_factory) == []

    async def test_fetch_failure_is_recorded(self, make_pipeline, session_factory) -> None:
        fetcher = SpyFetcher(error_result())
        result = await make_pipeline(fetcher).run("http://example.com/missing", "div", client_id="1.1.1.1")

        assert result.failure is FailureCategory.FETCH_FAILED
        assert result.error == "Page not found (404). Please check the URL."

        rows = await _request_rows(session_factory)
        assert len(rows) == 1
        assert rows[0].error_message == "Page not found (404). Please check the URL."
        assert rows[0].count == 0
        assert rows[0].response_size_bytes == 0
        assert rows[0].fetch_time_ms == 40

        stats = await StatisticsAggregator(session_factory).compute("example.com", "div")
        assert stats.domain_url_count == 1
        assert stats.domain_tag_total == 0
        assert stats.domain_avg_fetch_time_ms == 0

    async def test_failed_attempt_is_never_a_cache_hit(self, make_pipeline, session_factory) -> None:
        failing = SpyFetcher(error_result())
        await make_pipeline(failing).run("http://example.com/", "img", client_id="1.1.1.1")

        working = SpyFetcher(page_result())
        result = await make_pipeline(working).run("http://example.com/", "img", client_id="1.1.1.1")
        assert result.cached is False
        assert len(working.calls) == 1

    async def test_rate_limit_rejects_eleventh_request(self, make_pipeline, spy_fetcher) -> None:
        pipeline = make_pipeline(spy_fetcher)
        for _ in range(10):
            assert (await pipeline.run("http://example.com/", "img", client_id="2.2.2.2")).success

        result = await pipeline.run("http://example.com/", "img", client_id="2.2.2.2")
        assert result.failure is FailureCategory.RATE_LIMITED
        assert result.error == MINUTE_LIMIT_MESSAGE
        assert result.retry_after == 60

        other_client = await pipeline.run("http://example.com/", "img", client_id="3.3.3.3")
        assert other_client.success

    async def test_persistence_failure_is_generic(self, make_pipeline, spy_fetcher, session_factory) -> None:
        result = await make_pipeline(spy_fetcher, store=FailingStore(session_factory)).run(
            "http://example.com/", "img", client_id="1.1.1.1"
        )
        assert result.failure is FailureCategory.PERSISTENCE
        assert result.error == GENERIC_DATABASE_MESSAGE
        assert "disk full" not in result.error

    async def test_unexpected_error_is_not_echoed(self, make_pipeline) -> None:
        fetcher = ExplodingFetcher(RuntimeError("boom at 0xdeadbeef"))
        result = await make_pipeline(fetcher).run("http://example.com/", "img", client_id="1.1.1.1")

        assert result.failure is FailureCategory.INTERNAL
        assert result.error == GENERIC_FAILURE_MESSAGE
