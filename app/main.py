"""
FastAPI application with database pool and contact sync lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.features.contact_sync.api.router import router as contact_sync_router
from app.features.contact_sync.container import build_container
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.routes import health

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
    except Exception as e:
        logger.error("Failed to initialize database pool", error=str(e))
        raise

    app.state.contact_sync = build_container(config=settings)
    logger.info("All services initialized successfully", services=["database_pool", "contact_sync"])

    yield

    logger.info("Application shutting down")
    shutdown_errors = []

    try:
        await app.state.contact_sync.close()
    except Exception as e:
        logger.error("Error closing contact sync adapters", error=str(e))
        shutdown_errors.append(f"Contact sync: {e}")

    # Close database pool last (may have active connections)
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
    title="Contact Sync",
    description="Unified contacts and messages across messaging platforms",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(contact_sync_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round((time.time() - start_time) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
