"""FastAPI application entrypoint — lifespan, routers, middleware."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from sqlalchemy import text

from diary_insights import __version__
from diary_insights.config import get_settings
from diary_insights.database import engine
from diary_insights.middleware.logging import RequestLoggingMiddleware, configure_structured_logging
from diary_insights.routes import queue

logger = structlog.get_logger("diary_insights")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup / shutdown lifecycle.

    Startup:
      1. Initialize structured logging
      2. Verify the database is reachable
      3. Connect to Redis (optional; run history is skipped without it)

    Shutdown:
      1. Close Redis connection pool
      2. Dispose SQLAlchemy engine
    """
    settings = get_settings()
    configure_structured_logging(settings)
    logger.info(
        "diary_insights_starting",
        log_level=settings.log_level,
        environment=settings.environment,
        batch_size=settings.consumer_batch_size,
        max_attempts=settings.max_attempts,
    )

    redis: Redis | None = None
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
    except Exception as exc:
        logger.exception("startup_failure", error=str(exc))
        raise

    try:
        redis = Redis.from_url(settings.redis_url, decode_responses=True)
        await redis.ping()
    except Exception as exc:
        logger.warning("redis_unavailable", error=str(exc))
        if redis is not None:
            await redis.aclose()
        redis = None
    app.state.redis = redis

    yield

    logger.info("diary_insights_shutting_down")
    if redis is not None:
        await redis.aclose()
    await engine.dispose()


app = FastAPI(
    title="Diary Insights Scheduler",
    description=(
        "Schedules and delivers AI-written daily, weekly and monthly reflections "
        "for diary users, respecting each user's local calendar."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── Middleware ──────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


# ── Health check ────────────────────────────────────────────────────────────
@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    """Basic health check — verifies the API process is alive."""
    return {
        "status": "ok",
        "service": "diary-insights",
        "version": __version__,
    }


# ── Router registration ────────────────────────────────────────────────────
app.include_router(queue.router, prefix="/api/v1")
