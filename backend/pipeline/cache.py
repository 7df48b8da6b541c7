"""
Result cache: a read over the fact table for a fresh successful
(url, tag) record. Nothing is stored besides the facts themselves.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import utcnow
from database.repositories import RequestRepository


@dataclass(frozen=True)
class CachedResult:
    url: str
    tag: str
    count: int
    fetch_time_ms: int
    timestamp: datetime


class ResultCache:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        freshness_seconds: int = 300,
    ):
        self.session_factory = session_factory
        self.freshness_seconds = freshness_seconds

    async def lookup(
        self,
        url: str,
        tag: str,
        freshness_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CachedResult]:
        if freshness_seconds is None:
            freshness_seconds = self.freshness_seconds
        since = (now or utcnow()) - timedelta(seconds=freshness_seconds)

        async with self.session_factory() as db:
            record = await RequestRepository(db).latest_success(url, tag, since)

        if record is None:
            return None
        return CachedResult(
            url=url,
            tag=tag,
            count=record.count,
            fetch_time_ms=record.fetch_time_ms,
            timestamp=record.created_at,
        )
