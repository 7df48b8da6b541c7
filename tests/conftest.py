"""Shared pytest fixtures.

Fixture summary
---------------
settings         Settings pointing at a per-test SQLite file.
engine           Async engine with all tables created.
session_factory  async_sessionmaker bound to ``engine``.
store            Store over ``session_factory``.
spy_fetcher      Fetcher stand-in that records calls and returns the canned gallery page.
make_pipeline    Builds a TagCountPipeline around a given fetcher.

Storage tests use a file database (not ``:memory:``) so that independent
sessions get independent connections and concurrency is real.
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from analyzer.tag_counter import TagCounter
from core.config import Settings
from database.session import close_db, create_engine, create_session_factory, init_db
from database.store import Store
from pipeline.cache import ResultCache
from pipeline.pipeline import TagCountPipeline
from pipeline.rate_limiter import RateLimiter
from stats.aggregator import StatisticsAggregator

from fakes import SpyFetcher, page_result


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        LOG_FORMAT="console",
    )


@pytest_asyncio.fixture
async def engine(settings: Settings):
    engine = create_engine(settings)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory)


@pytest.fixture
def spy_fetcher() -> SpyFetcher:
    return SpyFetcher(page_result())


@pytest.fixture
def make_pipeline(settings: Settings, session_factory):
    def _make(fetcher, store: Store = None) -> TagCountPipeline:
        return TagCountPipeline(
            settings=settings,
            rate_limiter=RateLimiter(session_factory, settings),
            cache=ResultCache(session_factory, settings.CACHE_FRESHNESS_SECONDS),
            fetcher=fetcher,
            counter=TagCounter(),
            store=store or Store(session_factory),
            aggregator=StatisticsAggregator(session_factory, settings.STATS_AVG_WINDOW_HOURS),
        )

    return _make
