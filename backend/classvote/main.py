"""
classvote - FastAPI backend for live classroom presentation feedback
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from classvote.config import settings
from classvote.errors import ClassvoteError, VoteRejected
from classvote.routers import identity, results, session, sse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

# Sentry error tracking, enabled when SENTRY_DSN is set
_sentry_dsn = os.getenv("SENTRY_DSN")
if _sentry_dsn:
    try:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        sentry_sdk.init(
            dsn=_sentry_dsn,
            traces_sample_rate=0.1,
            environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
            release=f"classvote-api@{VERSION}",
            integrations=[FastApiIntegration()],
        )
        logger.info("Sentry initialized")
    except ImportError:
        logger.warning("sentry-sdk not installed, skipping")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting classvote API (debug=%s)", settings.debug)

    from classvote.services.database import init_db, close_db
    try:
        await init_db()
    except Exception as e:
        logger.warning("Database initialization warning: %s", e)

    yield

    logger.info("Shutting down...")
    from classvote.services.redis_client import redis_client
    await redis_client.close()
    await close_db()


app = FastAPI(
    title="classvote",
    description="Live like/dislike feedback for classroom presentations",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ClassvoteError)
async def classvote_error_handler(request: Request, exc: ClassvoteError):
    """Expected failures become JSON errors; the session is left unchanged."""
    content = {"detail": exc.message}
    if isinstance(exc, VoteRejected):
        content["reason"] = exc.reason
    return JSONResponse(status_code=exc.status_code, content=content)


# Include routers
app.include_router(identity.router, prefix="/api/identity", tags=["Identity"])
app.include_router(session.router, prefix="/api/session", tags=["Session"])
app.include_router(sse.router, prefix="/api/session", tags=["Session"])
app.include_router(results.router, prefix="/api/results", tags=["Results"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "classvote"}


@app.get("/health")
async def health():
    """Detailed health check: verifies Redis and PostgreSQL connectivity."""
    checks = {"api": True}

    # Redis
    try:
        from classvote.services.redis_client import redis_client
        client = await redis_client.get_client()
        await client.ping()
        checks["redis"] = True
    except Exception:
        checks["redis"] = False

    # PostgreSQL
    try:
        from sqlalchemy import text
        from classvote.services.database import get_db
        async with get_db() as db:
            await db.execute(text("SELECT 1"))
        checks["postgres"] = True
    except Exception:
        checks["postgres"] = False

    status = "healthy" if all(checks.values()) else "degraded"
    return {"status": status, "version": VERSION, "services": checks}
