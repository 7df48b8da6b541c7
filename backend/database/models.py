"""
SQLAlchemy ORM models for the tag counter.
Dimension tables (domains, urls, tags) are deduplicated by natural key;
requests is an append-only fact table.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, BigInteger, Text, DateTime,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class Domain(Base):
    """A hostname seen in at least one request."""
    __tablename__ = "domains"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    urls = relationship("Url", back_populates="domain")


class Url(Base):
    """A normalized URL under its domain."""
    __tablename__ = "urls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(Integer, ForeignKey("domains.id", ondelete="CASCADE"), nullable=False)
    path = Column(String(2048), nullable=False, default="/")
    full_url = Column(String(2048), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    domain = relationship("Domain", back_populates="urls")

    __table_args__ = (
        UniqueConstraint("domain_id", "full_url", name="uq_urls_domain_full_url"),
        Index("idx_urls_full_url", "full_url"),
    )


class Tag(Base):
    """A lowercase HTML tag name."""
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(20), unique=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class RequestRecord(Base):
    """
    One pipeline attempt. Never updated or deleted.
    error_message is set iff the attempt failed; failed rows carry zeros.
    """
    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    domain_id = Column(Integer, ForeignKey("domains.id"), nullable=False)
    url_id = Column(Integer, ForeignKey("urls.id"), nullable=False)
    tag_id = Column(Integer, ForeignKey("tags.id"), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    fetch_time_ms = Column(Integer, nullable=False, default=0)
    response_size_bytes = Column(BigInteger, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    domain = relationship("Domain")
    url = relationship("Url")
    tag = relationship("Tag")

    __table_args__ = (
        Index("idx_requests_url_tag_created", "url_id", "tag_id", "created_at"),
        Index("idx_requests_domain_created", "domain_id", "created_at"),
        Index("idx_requests_tag", "tag_id"),
    )

    @property
    def is_success(self) -> bool:
        return self.error_message is None


class RateWindowEntry(Base):
    """One admitted request from a client, kept until it ages out of every window."""
    __tablename__ = "rate_window"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(String(45), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_rate_window_client_created", "client_id", "created_at"),
        Index("idx_rate_window_created", "created_at"),
    )
