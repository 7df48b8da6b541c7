"""
HTML Tag Counter - FastAPI Application Entry Point.
"""

import time
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from analyzer.tag_counter import TagCounter
from api.middleware import RequestLoggingMiddleware
from api.routes import router
from core.config import Settings, get_settings
from core.exceptions import GENERIC_FAILURE_MESSAGE
from core.logging import setup_logging, get_logger
from crawler.fetcher import Fetcher
from database.session import close_db, create_engine, create_session_factory, init_db, ping_db
from database.store import Store
from pipeline.cache import ResultCache
from pipeline.pipeline import TagCountPipeline
from pipeline.rate_limiter import RateLimiter
from stats.aggregator import StatisticsAggregator

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, fetcher: Optional[Fetcher] = None) -> FastAPI:
    """
    Build the application. The lifespan owns the engine, the HTTP client and
    the assembled pipeline; a pre-built fetcher may be injected.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """Application lifespan - startup and shutdown."""
        logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

        async with AsyncExitStack() as stack:
            engine = create_engine(settings)
            stack.push_async_callback(close_db, engine)
            await init_db(engine)
            session_factory = create_session_factory(engine)

            page_fetcher = fetcher or await stack.enter_async_context(Fetcher(settings))
            app.state.settings = settings
            app.state.engine = engine
            app.state.pipeline = TagCountPipeline(
                settings=settings,
                rate_limiter=RateLimiter(session_factory, settings),
                cache=ResultCache(session_factory, settings.CACHE_FRESHNESS_SECONDS),
                fetcher=page_fetcher,
                counter=TagCounter(),
                store=Store(session_factory),
                aggregator=StatisticsAggregator(session_factory, settings.STATS_AVG_WINDOW_HOURS),
            )
            yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Counts occurrences of an HTML tag on a web page and reports "
            "usage statistics for the page's domain."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging
    app.add_middleware(RequestLoggingMiddleware)

    # ============================================================
    # Global Exception Handlers
    # ============================================================

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail)},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(p) for p in err["loc"][1:]) for err in exc.errors()})
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"Invalid request: {', '.join(fields) or 'body'}"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": GENERIC_FAILURE_MESSAGE},
        )

    # ============================================================
    # Health & System Endpoints
    # ============================================================

    @app.get("/health", tags=["System"])
    async def health_check(request: Request):
        """Health check endpoint for load balancers and monitoring."""
        health = {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "environment": settings.APP_ENV,
            "timestamp": time.time(),
            "services": {},
        }
        try:
            await ping_db(request.app.state.engine)
            health["services"]["database"] = "healthy"
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            health["services"]["database"] = "unhealthy"
            health["status"] = "degraded"
        return health

    @app.get("/", tags=["System"])
    async def root():
        """API root endpoint."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.DEBUG else "Disabled in production",
            "endpoints": [
                "POST /api/v1/count",
                "GET /api/v1/statistics/{domain}?tag={tag}",
            ],
        }

    app.include_router(router, prefix="/api/v1")
    return app


def build_app() -> FastAPI:
    """ASGI factory: configure logging, then build the app from the environment."""
    settings = get_settings()
    setup_logging(settings)
    return create_app(settings)


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "main:build_app",
        factory=True,
        host=settings.API_HOST,
        port=settings.API_PORT,
        workers=1 if settings.DEBUG else settings.API_WORKERS,
        reload=settings.DEBUG,
        log_config=None,  # Use our structlog config
    )
