"""
Read-side statistics over the requests fact table.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import utcnow
from database.repositories import DomainRepository, RequestRepository


@dataclass(frozen=True)
class Statistics:
    domain_url_count: int
    domain_avg_fetch_time_ms: int
    domain_tag_total: int
    global_tag_total: int


class StatisticsAggregator:
    """
    Computes, for a (domain, tag) pair:
    - distinct URLs ever recorded under the domain (failed attempts included)
    - mean fetch time of successful requests to the domain in the recent window
    - sum of counts for the tag on the domain, all time
    - sum of counts for the tag across all domains, all time
    Failed requests never contribute to the averages or sums.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        avg_window_hours: int = 24,
    ):
        self.session_factory = session_factory
        self.avg_window = timedelta(hours=avg_window_hours)

    async def compute(self, domain: str, tag: str, now: Optional[datetime] = None) -> Statistics:
        since = (now or utcnow()) - self.avg_window
        async with self.session_factory() as db:
            requests = RequestRepository(db)
            url_count = await DomainRepository(db).count_urls(domain)
            avg_time = await requests.average_fetch_time(domain, since)
            domain_total = await requests.sum_count_for_domain_tag(domain, tag)
            global_total = await requests.sum_count_for_tag(tag)

        return Statistics(
            domain_url_count=int(url_count or 0),
            domain_avg_fetch_time_ms=int(round(avg_time)) if avg_time else 0,
            domain_tag_total=domain_total,
            global_tag_total=global_total,
        )
