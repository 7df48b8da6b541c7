"""
Per-client sliding-window rate limiter backed by the rate_window table.
Counts admitted requests in a 1 minute and a 1 hour window.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
from database.models import utcnow
from database.repositories import RateWindowRepository
from database.session import session_scope

logger = get_logger(__name__)

MINUTE_WINDOW = timedelta(seconds=60)
HOUR_WINDOW = timedelta(seconds=3600)

HOURLY_LIMIT_MESSAGE = "Hourly rate limit exceeded. Please try again later."
MINUTE_LIMIT_MESSAGE = "Too many requests per minute. Please slow down."


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    reason: Optional[str] = None
    window: Optional[str] = None
    retry_after: int = 0


class RateLimiter:
    """
    Sliding-window limiter: a request is admitted when the client has fewer
    than RATE_LIMIT_PER_HOUR entries newer than now - 1h and fewer than
    RATE_LIMIT_PER_MINUTE entries newer than now - 60s.

    The count and the insert run in one transaction but are not serialized
    against other admissions from the same client on backends that allow
    concurrent readers, so a burst of parallel requests from one client can
    overrun a limit by a few requests. Exact enforcement needs a per-client
    lock row (SELECT ... FOR UPDATE) or an atomic counter.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.enabled = settings.RATE_LIMIT_ENABLED
        self.per_minute = settings.RATE_LIMIT_PER_MINUTE
        self.per_hour = settings.RATE_LIMIT_PER_HOUR
        self.retention = timedelta(seconds=settings.RATE_LIMIT_RETENTION_SECONDS)

    async def admit(self, client_id: str, now: Optional[datetime] = None) -> RateLimitDecision:
        """Admit or reject a request; records an entry on admission."""
        if not self.enabled:
            return RateLimitDecision(allowed=True)

        now = now or utcnow()
        async with session_scope(self.session_factory) as db:
            repo = RateWindowRepository(db)
            purged = await repo.purge_older_than(now - self.retention)
            if purged:
                logger.debug("Purged expired rate window entries", purged=purged)

            hour_count = await repo.count_since(client_id, now - HOUR_WINDOW)
            if hour_count >= self.per_hour:
                logger.info("Rate limit exceeded", client_id=client_id, window="hour", count=hour_count)
                return RateLimitDecision(
                    allowed=False,
                    reason=HOURLY_LIMIT_MESSAGE,
                    window="hour",
                    retry_after=int(HOUR_WINDOW.total_seconds()),
                )

            minute_count = await repo.count_since(client_id, now - MINUTE_WINDOW)
            if minute_count >= self.per_minute:
                logger.info("Rate limit exceeded", client_id=client_id, window="minute", count=minute_count)
                return RateLimitDecision(
                    allowed=False,
                    reason=MINUTE_LIMIT_MESSAGE,
                    window="minute",
                    retry_after=int(MINUTE_WINDOW.total_seconds()),
                )

            await repo.add(client_id, now)

        return RateLimitDecision(allowed=True)
