"""
Write side of the fact store.

Every public method runs in its own transaction. Dimension rows are
get-or-create by natural key; a unique-constraint conflict from a concurrent
first sighting rolls the whole unit back and retries it, so racing callers
converge on one row.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from core.exceptions import PersistenceError
from core.logging import get_logger
from core.validation import Target
from database.repositories import (
    DomainRepository, UrlRepository, TagRepository, RequestRepository,
)
from database.session import session_scope

logger = get_logger(__name__)

CONFLICT_RETRY_ATTEMPTS = 3


@dataclass(frozen=True)
class RecordedRequest:
    id: int
    domain_id: int
    url_id: int
    tag_id: int
    count: int
    fetch_time_ms: int
    response_size_bytes: int
    error_message: Optional[str]
    created_at: datetime


class Store:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(CONFLICT_RETRY_ATTEMPTS),
            wait=wait_random(min=0, max=0.05),
            retry=retry_if_exception_type(IntegrityError),
            reraise=True,
        )

    async def get_or_create_domain(self, name: str) -> int:
        async for attempt in self._retrying():
            with attempt:
                async with session_scope(self.session_factory) as db:
                    domain = await DomainRepository(db).get_or_create(name)
                    return domain.id

    async def get_or_create_url(self, domain_id: int, path: str, full_url: str) -> int:
        async for attempt in self._retrying():
            with attempt:
                async with session_scope(self.session_factory) as db:
                    url = await UrlRepository(db).get_or_create(domain_id, path, full_url)
                    return url.id

    async def get_or_create_tag(self, name: str) -> int:
        async for attempt in self._retrying():
            with attempt:
                async with session_scope(self.session_factory) as db:
                    tag = await TagRepository(db).get_or_create(name)
                    return tag.id

    async def record_request(
        self,
        target: Target,
        count: int,
        fetch_time_ms: int,
        response_size_bytes: int,
        error: Optional[str] = None,
    ) -> RecordedRequest:
        """
        Resolve the three dimension rows and append the fact row as one
        atomic unit. Failed attempts are written with zero count and size.

        Raises PersistenceError after a full rollback.
        """
        if error is not None:
            count = 0
            response_size_bytes = 0

        try:
            async for attempt in self._retrying():
                with attempt:
                    async with session_scope(self.session_factory) as db:
                        domain = await DomainRepository(db).get_or_create(target.host)
                        url = await UrlRepository(db).get_or_create(
                            domain.id, target.path, target.url
                        )
                        tag = await TagRepository(db).get_or_create(target.tag)
                        record = await RequestRepository(db).create(
                            domain_id=domain.id,
                            url_id=url.id,
                            tag_id=tag.id,
                            count=count,
                            fetch_time_ms=fetch_time_ms,
                            response_size_bytes=response_size_bytes,
                            error_message=error,
                        )
                        recorded = RecordedRequest(
                            id=record.id,
                            domain_id=record.domain_id,
                            url_id=record.url_id,
                            tag_id=record.tag_id,
                            count=record.count,
                            fetch_time_ms=record.fetch_time_ms,
                            response_size_bytes=record.response_size_bytes,
                            error_message=record.error_message,
                            created_at=record.created_at,
                        )
        except SQLAlchemyError as exc:
            logger.error(
                f"Database error while recording request: {exc}",
                domain=target.host,
                url=target.url,
                tag=target.tag,
            )
            raise PersistenceError("Failed to store result in database", detail=str(exc)) from exc

        return recorded
