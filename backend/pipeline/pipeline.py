"""
Tag count pipeline - orchestrates rate limit → cache → fetch → count →
persist → aggregate for a single request.

Every failure is converted to a PipelineResult before leaving run();
nothing escapes as an exception.
"""

import asyncio
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from analyzer.tag_counter import TagCounter
from core.config import Settings
from core.exceptions import (
    GENERIC_DATABASE_MESSAGE,
    GENERIC_FAILURE_MESSAGE,
    PersistenceError,
    user_message_for,
)
from core.logging import get_logger
from core.validation import Target, validate_target
from crawler.fetcher import Fetcher
from database.store import Store
from pipeline.cache import ResultCache
from pipeline.rate_limiter import RateLimiter
from stats.aggregator import Statistics, StatisticsAggregator

logger = get_logger(__name__)


class FailureCategory(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    INVALID_INPUT = "invalid_input"
    FETCH_FAILED = "fetch_failed"
    PERSISTENCE = "persistence"
    INTERNAL = "internal"


@dataclass(frozen=True)
class CountSummary:
    url: str
    tag: str
    count: int
    fetch_time_ms: int
    timestamp: datetime


@dataclass(frozen=True)
class PipelineResult:
    """Either summary and statistics are set, or failure and error."""

    summary: Optional[CountSummary] = None
    statistics: Optional[Statistics] = None
    cached: bool = False
    failure: Optional[FailureCategory] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.failure is None


def _failure(
    category: FailureCategory, message: str, retry_after: Optional[int] = None
) -> PipelineResult:
    return PipelineResult(failure=category, error=message, retry_after=retry_after)


class TagCountPipeline:
    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        cache: ResultCache,
        fetcher: Fetcher,
        counter: TagCounter,
        store: Store,
        aggregator: StatisticsAggregator,
    ):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.fetcher = fetcher
        self.counter = counter
        self.store = store
        self.aggregator = aggregator

    async def run(
        self,
        url: str,
        tag: str,
        bypass_cache: bool = False,
        client_id: str = "unknown",
    ) -> PipelineResult:
        with structlog.contextvars.bound_contextvars(client_id=client_id, url=url, tag=tag):
            try:
                return await self._run(url, tag, bypass_cache, client_id)
            except PersistenceError as exc:
                logger.error(f"Persistence failure: {exc.message}", detail=exc.detail)
                return _failure(FailureCategory.PERSISTENCE, GENERIC_DATABASE_MESSAGE)
            except Exception as exc:
                logger.error(f"Unexpected pipeline error: {exc}", exc_info=True)
                message = user_message_for(str(exc)) if str(exc) else GENERIC_FAILURE_MESSAGE
                return _failure(FailureCategory.INTERNAL, message)

    async def _run(self, url: str, tag: str, bypass_cache: bool, client_id: str) -> PipelineResult:
        decision = await self.rate_limiter.admit(client_id)
        if not decision.allowed:
            return _failure(FailureCategory.RATE_LIMITED, decision.reason, decision.retry_after)

        validation = validate_target(url, tag, self.settings)
        if not validation.valid:
            logger.warning("Rejected request target", reason=validation.error)
            return _failure(FailureCategory.INVALID_INPUT, validation.error)
        target = validation.target

        if not bypass_cache:
            cached = await self.cache.lookup(target.url, target.tag)
            if cached is not None:
                logger.info("Cache hit", normalized_url=target.url)
                stats = await self.aggregator.compute(target.host, target.tag)
                return PipelineResult(
                    summary=CountSummary(
                        url=cached.url,
                        tag=cached.tag,
                        count=cached.count,
                        fetch_time_ms=cached.fetch_time_ms,
                        timestamp=cached.timestamp,
                    ),
                    statistics=stats,
                    cached=True,
                )
            logger.info("Cache miss", normalized_url=target.url)

        return await self._fetch_and_record(target)

    async def _fetch_and_record(self, target: Target) -> PipelineResult:
        fetched = await self.fetcher.fetch(target.url)

        if not fetched.is_success:
            error = fetched.error
            await self.store.record_request(
                target,
                count=0,
                fetch_time_ms=error.fetch_time_ms,
                response_size_bytes=0,
                error=error.message,
            )
            return _failure(FailureCategory.FETCH_FAILED, error.message)

        page = fetched.page
        count = await asyncio.to_thread(self.counter.count, page.body, target.tag)
        recorded = await self.store.record_request(
            target,
            count=count,
            fetch_time_ms=page.fetch_time_ms,
            response_size_bytes=page.size_bytes,
        )
        stats = await self.aggregator.compute(target.host, target.tag)
        logger.info("Counted tag", count=count, fetch_time_ms=page.fetch_time_ms)

        return PipelineResult(
            summary=CountSummary(
                url=target.url,
                tag=target.tag,
                count=count,
                fetch_time_ms=page.fetch_time_ms,
                timestamp=recorded.created_at,
            ),
            statistics=stats,
        )
