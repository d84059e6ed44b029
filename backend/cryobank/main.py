import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cryobank.api.v1 import api_router
from cryobank.config import settings
from cryobank.core.error_handlers import register_error_handlers
from cryobank.core.middleware import DeadlineMiddleware, RequestIDMiddleware
from cryobank.services.allocation import SlotLockRegistry
from cryobank.services.directory import DirectoryClient
from cryobank.services.location_tree import LocationTree

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if app.state.directory is None:
        logger.info("DIRECTORY_SERVICE_URL not set; user and patient checks are skipped")
    yield
    # Shutdown: cleanup connections
    from cryobank.database import engine

    await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Process-wide state shared by every request
    app.state.location_tree = LocationTree()
    app.state.slot_locks = SlotLockRegistry()
    app.state.directory = DirectoryClient.from_settings()

    # --- Middleware (outermost first) ---

    # Caller deadline
    app.add_middleware(
        DeadlineMiddleware, max_timeout=settings.REQUEST_TIMEOUT_SECONDS
    )

    # Request ID injection
    app.add_middleware(RequestIDMiddleware)

    # CORS - tighten in production via CORS_ORIGINS env var
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
        allow_headers=[
            "Content-Type", "X-Request-ID", "X-User-ID", "X-Request-Timeout",
        ],
    )

    # --- Error handlers ---
    register_error_handlers(app)

    # --- Routes ---
    app.include_router(api_router)
    app.add_api_route("/api/health", health_check, methods=["GET"])
    return app


async def health_check():
    """Deep health check: verifies DB and Redis connectivity."""
    import time

    checks: dict = {"version": settings.APP_VERSION}
    healthy = True

    # Database check
    start = time.monotonic()
    try:
        from sqlalchemy import text

        from cryobank.database import async_session_factory

        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = {"status": "ok", "latency_ms": round((time.monotonic() - start) * 1000, 1)}
    except Exception as exc:
        healthy = False
        checks["database"] = {"status": "error", "detail": str(exc)[:200]}

    # Redis check (Celery broker)
    start = time.monotonic()
    try:
        import redis.asyncio as aioredis

        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=3)
        await r.ping()
        await r.aclose()
        checks["redis"] = {"status": "ok", "latency_ms": round((time.monotonic() - start) * 1000, 1)}
    except Exception as exc:
        healthy = False
        checks["redis"] = {"status": "error", "detail": str(exc)[:200]}

    checks["status"] = "healthy" if healthy else "degraded"

    from fastapi.responses import JSONResponse

    status_code = 200 if healthy else 503
    return JSONResponse(content=checks, status_code=status_code)


app = create_app()
