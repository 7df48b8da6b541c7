"""
Middleware components:
- Request ID injection
- Request timing/logging
Plus client address resolution used by the rate limiter.
"""

import ipaddress
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging import get_logger

logger = get_logger(__name__)

FORWARDED_HEADERS = ("x-forwarded-for", "x-real-ip", "client-ip")


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def get_client_ip(request: Request, trust_forwarded: bool = True) -> str:
    """
    Resolve the client address. Forwarded headers are consulted first when
    trusted; proxies may send a comma-separated chain, the first entry wins.
    """
    if trust_forwarded:
        for header in FORWARDED_HEADERS:
            value = request.headers.get(header)
            if not value:
                continue
            candidate = value.split(",")[0].strip()
            if _valid_ip(candidate):
                return candidate
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with timing and status code."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        request.state.request_id = request_id
        start_time = time.time()

        response = await call_next(request)

        duration_ms = round((time.time() - start_time) * 1000)
        logger.info(
            "HTTP request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
            request_id=request_id,
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms}ms"
        return response
