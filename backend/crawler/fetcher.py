"""
Single-page HTTP fetcher using httpx.

Network conditions are never raised to the caller: every outcome is a
FetchResult carrying either the page body or a classified FetchError.
"""

import asyncio
import enum
import socket
import ssl
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from core.config import Settings
from core.exceptions import sanitize_error_message
from core.logging import get_logger

logger = get_logger(__name__)

HTML_MARKERS = ("<html", "<!doctype", "<p")
NON_HTML_CONTENT_TYPES = (
    "application/json",
    "application/xml",
    "text/xml",
    "text/plain",
    "image/",
    "application/pdf",
)

STATUS_MESSAGES: Dict[int, str] = {
    400: "Bad request (400). The server cannot process the request.",
    401: "Unauthorized (401). Authentication is required.",
    403: "Access forbidden (403). The website blocked our request.",
    404: "Page not found (404). Please check the URL.",
    500: "Server error (500). The website is experiencing technical difficulties.",
    502: "Bad gateway (502). The website server is having issues.",
    503: "Service unavailable (503). The website is temporarily down.",
    504: "Gateway timeout (504). The website server is taking too long to respond.",
}

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "could not resolve host",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated with hostname",
)
_TLS_MARKERS = ("ssl", "certificate", "tls")


class FetchErrorKind(str, enum.Enum):
    UNRESOLVABLE_HOST = "unresolvable_host"
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    TLS_ERROR = "tls_error"
    HTTP_STATUS = "http_status"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    EMPTY_RESPONSE = "empty_response"
    SUSPICIOUSLY_SMALL = "suspiciously_small"
    NOT_HTML = "not_html"
    REQUEST_FAILED = "request_failed"


ERROR_MESSAGES: Dict[FetchErrorKind, str] = {
    FetchErrorKind.UNRESOLVABLE_HOST: "Unable to resolve domain name. Please check the URL.",
    FetchErrorKind.CONNECTION_REFUSED: "Connection refused by the server. The website may be down.",
    FetchErrorKind.TIMEOUT: "Request timed out. The website is taking too long to respond.",
    FetchErrorKind.TLS_ERROR: "SSL certificate error. The website may have security issues.",
    FetchErrorKind.TOO_MANY_REDIRECTS: "Too many redirects. The website redirected more than allowed.",
    FetchErrorKind.EMPTY_RESPONSE: "The website returned empty content.",
    FetchErrorKind.SUSPICIOUSLY_SMALL: (
        "Received suspiciously small response. "
        "The website might be blocking automated requests."
    ),
    FetchErrorKind.NOT_HTML: "The URL does not contain valid HTML content.",
}


@dataclass(frozen=True)
class FetchedPage:
    url: str
    final_url: str
    body: str
    fetch_time_ms: int
    size_bytes: int
    status_code: int
    content_type: Optional[str] = None


@dataclass(frozen=True)
class FetchError:
    kind: FetchErrorKind
    message: str
    fetch_time_ms: int = 0
    status_code: Optional[int] = None


@dataclass(frozen=True)
class FetchResult:
    """Either page or error is set."""

    page: Optional[FetchedPage] = None
    error: Optional[FetchError] = None

    @property
    def is_success(self) -> bool:
        return self.error is None and self.page is not None


def status_error_message(status_code: int) -> str:
    return STATUS_MESSAGES.get(
        status_code, f"HTTP error ({status_code}). Unable to fetch the page."
    )


def _exception_chain(exc: BaseException):
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_transport_error(exc: BaseException) -> FetchErrorKind:
    """Map a transport-level exception to an error kind, most specific first."""
    chain = list(_exception_chain(exc))
    text = " ".join(str(e) for e in chain).lower()

    if any(isinstance(e, socket.gaierror) for e in chain) or any(m in text for m in _DNS_MARKERS):
        return FetchErrorKind.UNRESOLVABLE_HOST
    if any(isinstance(e, ConnectionRefusedError) for e in chain) or "connection refused" in text:
        return FetchErrorKind.CONNECTION_REFUSED
    if any(isinstance(e, (httpx.TimeoutException, asyncio.TimeoutError)) for e in chain) or "timed out" in text:
        return FetchErrorKind.TIMEOUT
    if any(isinstance(e, ssl.SSLError) for e in chain) or any(m in text for m in _TLS_MARKERS):
        return FetchErrorKind.TLS_ERROR
    if any(isinstance(e, httpx.TooManyRedirects) for e in chain):
        return FetchErrorKind.TOO_MANY_REDIRECTS
    return FetchErrorKind.REQUEST_FAILED


def classify_content(
    body: str, content_type: Optional[str], min_body_bytes: int
) -> Optional[FetchErrorKind]:
    """Return the error kind for an unusable 2xx/3xx body, or None if it looks like HTML."""
    if not body or not body.strip():
        return FetchErrorKind.EMPTY_RESPONSE
    if len(body.encode("utf-8", errors="replace")) < min_body_bytes:
        return FetchErrorKind.SUSPICIOUSLY_SMALL
    if content_type:
        ct = content_type.lower()
        if any(marker in ct for marker in NON_HTML_CONTENT_TYPES):
            return FetchErrorKind.NOT_HTML
    lowered = body.lower()
    if not any(marker in lowered for marker in HTML_MARKERS):
        return FetchErrorKind.NOT_HTML
    return None


class Fetcher:
    """
    Fetches one URL with bounded timeouts and redirects.

    Owns a shared httpx.AsyncClient for its lifetime; use as an async
    context manager or call start()/close().
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.total_timeout = settings.FETCH_TOTAL_TIMEOUT
        self.min_body_bytes = settings.FETCH_MIN_BODY_BYTES
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.settings.FETCH_USER_AGENT,
            "Accept": (
                "text/html,application/xhtml+xml,application/xml;q=0.9,"
                "image/webp,image/apng,*/*;q=0.8"
            ),
            "Accept-Language": "en-US,en;q=0.9",
            "Accept-Encoding": "gzip, deflate, br",
            "Connection": "keep-alive",
            "Upgrade-Insecure-Requests": "1",
            "Cache-Control": "max-age=0",
            "Sec-Fetch-Dest": "document",
            "Sec-Fetch-Mode": "navigate",
            "Sec-Fetch-Site": "none",
            "Sec-Fetch-User": "?1",
            "DNT": "1",
            "Referer": "https://www.google.com/",
        }

    async def start(self) -> None:
        if self._client is not None:
            return
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                self.settings.FETCH_TOTAL_TIMEOUT,
                connect=self.settings.FETCH_CONNECT_TIMEOUT,
            ),
            follow_redirects=True,
            max_redirects=self.settings.FETCH_MAX_REDIRECTS,
            verify=self.settings.FETCH_VERIFY_TLS,
            headers=self._headers(),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
        self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def fetch(self, url: str) -> FetchResult:
        if self._client is None:
            await self.start()

        start = time.monotonic()

        def elapsed_ms() -> int:
            return int(round((time.monotonic() - start) * 1000))

        try:
            response = await asyncio.wait_for(self._client.get(url), timeout=self.total_timeout)
        except Exception as exc:
            kind = classify_transport_error(exc)
            message = ERROR_MESSAGES.get(kind) or (
                "Failed to fetch URL: " + sanitize_error_message(str(exc) or type(exc).__name__)
            )
            logger.warning("Fetch failed", url=url, kind=kind.value, error=str(exc)[:200])
            return FetchResult(error=FetchError(kind=kind, message=message, fetch_time_ms=elapsed_ms()))

        fetch_time_ms = elapsed_ms()
        status_code = response.status_code

        if status_code >= 400:
            logger.info("Fetch returned error status", url=url, status_code=status_code)
            return FetchResult(
                error=FetchError(
                    kind=FetchErrorKind.HTTP_STATUS,
                    message=status_error_message(status_code),
                    fetch_time_ms=fetch_time_ms,
                    status_code=status_code,
                )
            )

        body = response.text
        content_type = response.headers.get("content-type")
        kind = classify_content(body, content_type, self.min_body_bytes)
        if kind is not None:
            logger.info("Fetched content rejected", url=url, kind=kind.value, content_type=content_type)
            return FetchResult(
                error=FetchError(
                    kind=kind,
                    message=ERROR_MESSAGES[kind],
                    fetch_time_ms=fetch_time_ms,
                    status_code=status_code,
                )
            )

        logger.info("Fetched page", url=url, status_code=status_code, fetch_time_ms=fetch_time_ms)
        return FetchResult(
            page=FetchedPage(
                url=url,
                final_url=str(response.url),
                body=body,
                fetch_time_ms=fetch_time_ms,
                size_bytes=len(response.content),
                status_code=status_code,
                content_type=content_type,
            )
        )
