"""
Pydantic schemas for API request/response validation.
Responses serialize with camelCase keys.
"""

import re
from datetime import datetime, timezone
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SCHEME_PREFIX = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================
# Request Schemas
# ============================================================

class CountRequest(CamelModel):
    url: str = Field(..., description="Page to fetch")
    tag: str = Field(
        ...,
        validation_alias=AliasChoices("tag", "element"),
        description="HTML tag name to count",
    )
    bypass_cache: bool = Field(
        False,
        validation_alias=AliasChoices("bypassCache", "bypass_cache", "nocache"),
        description="Fetch again even if a fresh cached result exists",
    )

    @field_validator("url")
    @classmethod
    def normalize_url(cls, v: str) -> str:
        v = v.strip()
        if v and not SCHEME_PREFIX.match(v) and not re.match(r"^(data|javascript):", v, re.IGNORECASE):
            v = f"http://{v}"
        return v

    @field_validator("tag")
    @classmethod
    def normalize_tag(cls, v: str) -> str:
        return v.strip().lower()


# ============================================================
# Response Schemas
# ============================================================

class CountResult(CamelModel):
    url: str
    tag: str
    count: int
    fetch_time_ms: int
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        # stored timestamps are naive UTC
        return v.replace(tzinfo=timezone.utc) if v.tzinfo is None else v


class StatisticsSchema(CamelModel):
    domain_url_count: int
    domain_avg_fetch_time_ms: int
    domain_tag_total: int
    global_tag_total: int


class CountSuccessResponse(CamelModel):
    success: bool = True
    cached: bool
    result: CountResult
    statistics: StatisticsSchema


class ErrorResponse(CamelModel):
    success: bool = False
    error: str


class StatisticsResponse(CamelModel):
    domain: str
    tag: str
    statistics: StatisticsSchema

