# app/main.py
"""
Application entrypoint with shared-store lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.features.annotation.api.router import notifications_router
from app.features.annotation.api.router import router as annotation_router
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.middleware import RequestContextMiddleware
from app.routes import health
from app.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        logger.info("All services initialized successfully", services=["redis"])
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        try:
            await fast_redis.close()
        except Exception as cleanup_error:
            logger.error("Error cleaning up Redis", error=str(cleanup_error))
        raise

    yield

    logger.info("Application shutting down")
    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
        logger.info("All services closed successfully")
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))


app = FastAPI(
    title="Collaborative Annotation Engine",
    description="Shared highlights, help requests, voice explanations and presence for documents",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(annotation_router)
app.include_router(notifications_router)


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


# Registered last so it wraps the request logger and request_id reaches its log line
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
