"""
FastAPI route handlers for the tag counter API.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from api.middleware import get_client_ip
from api.schemas import (
    CountRequest, CountResult, CountSuccessResponse, ErrorResponse, StatisticsResponse, StatisticsSchema,
)
from core.validation import validate_tag
from core.logging import get_logger
from pipeline.pipeline import FailureCategory, PipelineResult, TagCountPipeline
from stats.aggregator import StatisticsAggregator

logger = get_logger(__name__)

router = APIRouter()

FAILURE_STATUS = {
    FailureCategory.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    FailureCategory.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    FailureCategory.FETCH_FAILED: status.HTTP_400_BAD_REQUEST,
    FailureCategory.PERSISTENCE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    FailureCategory.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_pipeline(request: Request) -> TagCountPipeline:
    return request.app.state.pipeline


def get_aggregator(request: Request) -> StatisticsAggregator:
    return request.app.state.pipeline.aggregator


def success_response(result: PipelineResult) -> CountSuccessResponse:
    return CountSuccessResponse(
        cached=result.cached,
        result=CountResult(**asdict(result.summary)),
        statistics=StatisticsSchema(**asdict(result.statistics)),
    )


# ============================================================
# COUNT ENDPOINT
# ============================================================

@router.post(
    "/count",
    response_model=CountSuccessResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Count a tag on a web page",
    tags=["Count"],
)
async def count_tag(
    payload: CountRequest,
    request: Request,
    pipeline: TagCountPipeline = Depends(get_pipeline),
):
    """
    Fetch the page (or reuse a fresh cached result), count the tag and
    return the count with domain statistics.
    """
    client_id = get_client_ip(request, pipeline.settings.RATE_LIMIT_TRUST_FORWARDED)
    result = await pipeline.run(
        payload.url,
        payload.tag,
        bypass_cache=payload.bypass_cache,
        client_id=client_id,
    )
    if result.success:
        return success_response(result)

    headers = {}
    if result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    return JSONResponse(
        status_code=FAILURE_STATUS[result.failure],
        content=ErrorResponse(error=result.error).model_dump(by_alias=True),
        headers=headers,
    )


# ============================================================
# STATISTICS ENDPOINT
# ============================================================

@router.get(
    "/statistics/{domain}",
    response_model=StatisticsResponse,
    responses={400: {"model": ErrorResponse}},
    summary="Get tag statistics for a domain",
    tags=["Statistics"],
)
async def get_statistics(
    domain: str,
    request: Request,
    tag: str = Query(..., description="HTML tag name"),
    aggregator: StatisticsAggregator = Depends(get_aggregator),
):
    checked = validate_tag(tag, request.app.state.settings.TAG_MAX_LENGTH)
    if not checked.valid:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ErrorResponse(error=checked.error).model_dump(by_alias=True),
        )
    domain = domain.strip().lower()
    tag = checked.target.tag
    stats = await aggregator.compute(domain, tag)
    return StatisticsResponse(
        domain=domain,
        tag=tag,
        statistics=StatisticsSchema(**asdict(stats)),
    )
