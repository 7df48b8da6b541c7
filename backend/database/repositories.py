"""
Repository pattern for all database operations.
Each repository works inside the session (and transaction) it is given.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select, delete, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Domain, Url, Tag, RequestRecord, RateWindowEntry


class DomainRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_name(self, name: str) -> Optional[Domain]:
        result = await self.db.execute(select(Domain).where(Domain.name == name))
        return result.scalar_one_or_none()

    async def get_or_create(self, name: str) -> Domain:
        """
        Return the domain row for name, inserting it if absent.
        A concurrent insert of the same name surfaces as IntegrityError on flush.
        """
        domain = await self.get_by_name(name)
        if domain:
            return domain
        domain = Domain(name=name)
        self.db.add(domain)
        await self.db.flush()
        return domain

    async def count_urls(self, name: str) -> int:
        result = await self.db.execute(
            select(func.count(func.distinct(Url.id)))
            .join(Domain, Url.domain_id == Domain.id)
            .where(Domain.name == name)
        )
        return result.scalar_one()


class UrlRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, domain_id: int, full_url: str) -> Optional[Url]:
        result = await self.db.execute(
            select(Url).where(and_(Url.domain_id == domain_id, Url.full_url == full_url))
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, domain_id: int, path: str, full_url: str) -> Url:
        url = await self.get(domain_id, full_url)
        if url:
            return url
        url = Url(domain_id=domain_id, path=path, full_url=full_url)
        self.db.add(url)
        await self.db.flush()
        return url


class TagRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_name(self, name: str) -> Optional[Tag]:
        result = await self.db.execute(select(Tag).where(Tag.name == name))
        return result.scalar_one_or_none()

    async def get_or_create(self, name: str) -> Tag:
        tag = await self.get_by_name(name)
        if tag:
            return tag
        tag = Tag(name=name)
        self.db.add(tag)
        await self.db.flush()
        return tag


class RequestRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        domain_id: int,
        url_id: int,
        tag_id: int,
        count: int,
        fetch_time_ms: int,
        response_size_bytes: int,
        error_message: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> RequestRecord:
        record = RequestRecord(
            domain_id=domain_id,
            url_id=url_id,
            tag_id=tag_id,
            count=max(0, int(count or 0)),
            fetch_time_ms=max(0, int(fetch_time_ms or 0)),
            response_size_bytes=max(0, int(response_size_bytes or 0)),
            error_message=error_message,
        )
        if created_at is not None:
            record.created_at = created_at
        self.db.add(record)
        await self.db.flush()
        return record

    async def latest_success(
        self, full_url: str, tag: str, since: datetime
    ) -> Optional[RequestRecord]:
        """Most recent successful record for (url, tag) created after since."""
        result = await self.db.execute(
            select(RequestRecord)
            .join(Url, RequestRecord.url_id == Url.id)
            .join(Tag, RequestRecord.tag_id == Tag.id)
            .where(
                and_(
                    Url.full_url == full_url,
                    Tag.name == tag,
                    RequestRecord.created_at > since,
                    RequestRecord.error_message.is_(None),
                )
            )
            .order_by(RequestRecord.created_at.desc(), RequestRecord.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def average_fetch_time(self, domain: str, since: datetime) -> Optional[float]:
        result = await self.db.execute(
            select(func.avg(RequestRecord.fetch_time_ms))
            .join(Domain, RequestRecord.domain_id == Domain.id)
            .where(
                and_(
                    Domain.name == domain,
                    RequestRecord.created_at > since,
                    RequestRecord.error_message.is_(None),
                )
            )
        )
        return result.scalar_one_or_none()

    async def sum_count_for_domain_tag(self, domain: str, tag: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(RequestRecord.count), 0))
            .join(Domain, RequestRecord.domain_id == Domain.id)
            .join(Tag, RequestRecord.tag_id == Tag.id)
            .where(
                and_(
                    Domain.name == domain,
                    Tag.name == tag,
                    RequestRecord.error_message.is_(None),
                )
            )
        )
        return int(result.scalar_one())

    async def sum_count_for_tag(self, tag: str) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(RequestRecord.count), 0))
            .join(Tag, RequestRecord.tag_id == Tag.id)
            .where(and_(Tag.name == tag, RequestRecord.error_message.is_(None)))
        )
        return int(result.scalar_one())


class RateWindowRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, client_id: str, created_at: datetime) -> None:
        self.db.add(RateWindowEntry(client_id=client_id, created_at=created_at))
        await self.db.flush()

    async def count_since(self, client_id: str, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(RateWindowEntry.id)).where(
                and_(
                    RateWindowEntry.client_id == client_id,
                    RateWindowEntry.created_at > since,
                )
            )
        )
        return result.scalar_one()

    async def purge_older_than(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(RateWindowEntry).where(RateWindowEntry.created_at < cutoff)
        )
        return result.rowcount or 0
