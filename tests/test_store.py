"""Tests for the write side of the fact store."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import PersistenceError
from core.validation import Target
from database import store as store_module
from database.models import Domain, RequestRecord, Tag, Url

TARGET = Target(url="http://example.com/a", host="example.com", path="/a", tag="img")


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(model.id)))).scalar_one()


class TestGetOrCreate:
    async def test_domain_is_idempotent(self, store, session_factory) -> None:
        first = await store.get_or_create_domain("example.com")
        second = await store.get_or_create_domain("example.com")
        assert first == second
        assert await _count(session_factory, Domain) == 1

    async def test_concurrent_first_sightings_converge(self, store, session_factory) -> None:
        ids = await asyncio.gather(*(store.get_or_create_domain("race.example") for _ in range(5)))
        assert len(set(ids)) == 1
        assert await _count(session_factory, Domain) == 1

    async def test_url_and_tag(self, store, session_factory) -> None:
        domain_id = await store.get_or_create_domain("example.com")
        url_id = await store.get_or_create_url(domain_id, "/a", "http://example.com/a")
        assert url_id == await store.get_or_create_url(domain_id, "/a", "http://example.com/a")
        assert url_id != await store.get_or_create_url(domain_id, "/b", "http://example.com/b")

        tag_id = await store.get_or_create_tag("img")
        assert tag_id == await store.get_or_create_tag("img")
        assert await _count(session_factory, Url) == 2
        assert await _count(session_factory, Tag) == 1


class TestRecordRequest:
    async def test_success_row(self, store) -> None:
        recorded = await store.record_request(TARGET, count=4, fetch_time_ms=150, response_size_bytes=2048)
        assert recorded.id > 0
        assert recorded.count == 4
        assert recorded.fetch_time_ms == 150
        assert recorded.response_size_bytes == 2048
        assert recorded.error_message is None
        assert recorded.created_at is not None

    async def test_failed_row_is_zeroed(self, store) -> None:
        recorded = await store.record_request(
            TARGET, count=9, fetch_time_ms=80, response_size_bytes=512, error="Page not found (404)."
        )
        assert recorded.count == 0
        assert recorded.response_size_bytes == 0
        assert recorded.fetch_time_ms == 80
        assert recorded.error_message == "Page not found (404)."

    async def test_negative_values_are_clamped(self, store) -> None:
        recorded = await store.record_request(TARGET, count=-1, fetch_time_ms=-5, response_size_bytes=-10)
        assert (recorded.count, recorded.fetch_time_ms, recorded.response_size_bytes) == (0, 0, 0)

    async def test_reuses_dimension_rows(self, store, session_factory) -> None:
        first = await store.record_request(TARGET, count=1, fetch_time_ms=10, response_size_bytes=100)
        second = await store.record_request(TARGET, count=2, fetch_time_ms=20, response_size_bytes=200)
        assert (first.domain_id, first.url_id, first.tag_id) == (second.domain_id, second.url_id, second.tag_id)
        assert await _count(session_factory, RequestRecord) == 2

    async def test_failure_rolls_back_everything(self, store, session_factory, monkeypatch) -> None:
        async def fail(self, **kwargs):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(store_module.RequestRepository, "create", fail)

        with pytest.raises(PersistenceError):
            await store.record_request(TARGET, count=1, fetch_time_ms=10, response_size_bytes=100)

        assert await _count(session_factory, Domain) == 0
        assert await _count(session_factory, Url) == 0
        assert await _count(session_factory, Tag) == 0
        assert await _count(session_factory, RequestRecord) == 0
