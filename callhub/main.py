# callhub/main.py
"""
Application entrypoint: backend lifecycle, call runtime wiring and routers.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from callhub.calls.runtime import build_runtime
from callhub.config import settings
from callhub.db.pool import db_pool
from callhub.infrastructure.observability.logging import get_logger, setup_logging
from callhub.routes import calls, diagnostics, health, signaling
from callhub.services.call_mirror_service import PostgresCallMirror
from callhub.services.infrastructure.redis_client import fast_redis
from callhub.services.ledger_service import PostgresBalanceLedger
from callhub.services.notification_service import (
    ConnectionNotificationDispatcher,
    PushNotifier,
    PushReachability,
)
from callhub.services.preference_service import PostgresPreferenceStore

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        # Initialize database pool first
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        # Initialize Redis second
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        startup_tasks.append("redis")

        push = PushNotifier()
        runtime = build_runtime(
            settings,
            redis_client=fast_redis,
            ledger=PostgresBalanceLedger(),
            mirror=PostgresCallMirror(),
            notifier_factory=lambda presence: ConnectionNotificationDispatcher(presence, push),
            preferences=PostgresPreferenceStore(),
            reachability=PushReachability(push),
        )
        await runtime.start()
        app.state.runtime = runtime
        startup_tasks.append("call_runtime")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "redis" in startup_tasks:
            try:
                await fast_redis.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    # Stop the call runtime first so pending mirror writes still have a pool
    try:
        logger.info("Stopping call runtime")
        await app.state.runtime.stop()
    except Exception as e:
        logger.error("Error stopping call runtime", error=str(e))
        shutdown_errors.append(f"Runtime: {e}")

    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Callhub",
    description="Realtime call signaling with server-authoritative billing",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(calls.router)
app.include_router(diagnostics.router)
app.include_router(signaling.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
