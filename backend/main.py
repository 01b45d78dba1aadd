#!/usr/bin/env python3
"""
BeatMarket FastAPI Application Entry Point

Backend of an audio marketplace: creators upload tracks, the platform derives
preview clips and BPM metadata, and buyers spend credits to download originals.

- FastAPI application with CORS and request logging middleware
- API router registration under the /api/v1 prefix
- Startup/shutdown lifecycle for MongoDB and Redis
- Domain error handlers rendering ``{"error", "message", "statusCode"}`` bodies
- Liveness and readiness endpoints

API Structure:
    /api/v1/upload     - upload initiation and finalization
    /api/v1/uploads    - creator dashboard and publish state
    /api/v1/search     - public catalog search
    /api/v1/listings   - public listing lookup
    /api/v1/download   - credit-gated downloads
    /api/v1/purchase   - credit package checkout
    /api/v1/wallet     - balance and transaction history
    /api/v1/webhooks   - payment provider callbacks
    /api/v1/feedback   - tag corrections

Usage:
    uvicorn main:app --host 0.0.0.0 --port 8000 --reload
"""

import logging
import time
import uuid

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import uvicorn

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from beatmarket import __version__
from beatmarket.api.v1 import api_router
from beatmarket.config import Settings, get_settings
from beatmarket.core.database import close_db, get_db_client, init_db
from beatmarket.core.errors import register_exception_handlers
from beatmarket.core.redis_client import close_redis, get_redis_client, init_redis
from beatmarket.utils.logger import setup_logging


logger = logging.getLogger(__name__)

HTTP_ERROR_THRESHOLD = 400


# =============================================================================
# Application Lifespan Management
# =============================================================================


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Connect MongoDB and Redis on startup and close them on shutdown.

    MongoDB is required; Redis is optional and the API serves uncached
    without it.
    """
    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)

    logger.info("%s API starting (env=%s)", settings.app_name, settings.app_env)

    try:
        await init_db(settings)
    except Exception as error:
        logger.exception("Failed to initialize MongoDB")
        raise RuntimeError(f"MongoDB initialization failed: {error}") from error

    try:
        await init_redis(settings)
    except Exception:
        logger.warning("Redis unavailable, continuing without caching", exc_info=True)

    logger.info("%s API ready to accept requests", settings.app_name)

    yield

    logger.info("%s API shutting down", settings.app_name)

    try:
        await close_redis()
    except Exception:
        logger.exception("Error closing Redis connection")

    try:
        await close_db()
    except Exception:
        logger.exception("Error closing MongoDB connection")


# =============================================================================
# Middleware
# =============================================================================


async def request_logging_middleware(request: Request, call_next) -> Response:
    """
    Log each request with its status and latency.

    Adds ``X-Request-ID`` (echoing the client's value when present) and
    ``X-Process-Time`` headers to every response.
    """
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    start_time = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            "Request failed: %s %s [Request-ID: %s]",
            request.method,
            request.url.path,
            request_id,
        )
        raise

    process_time_ms = round((time.perf_counter() - start_time) * 1000, 2)
    response.headers["X-Process-Time"] = f"{process_time_ms}ms"
    response.headers["X-Request-ID"] = request_id

    log_level = logging.INFO if response.status_code < HTTP_ERROR_THRESHOLD else logging.WARNING
    logger.log(
        log_level,
        "%s %s -> %d in %sms",
        request.method,
        request.url.path,
        response.status_code,
        process_time_ms,
        extra={"request_id": request_id},
    )
    return response


# =============================================================================
# Core Endpoints
# =============================================================================


async def health_check() -> dict[str, Any]:
    """Liveness probe: the process is up."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "version": __version__,
        "service": get_settings().app_name,
    }


async def readiness_check() -> JSONResponse:
    """
    Readiness probe: MongoDB answers a ping.

    Redis is reported but does not affect readiness.
    """
    checks: dict[str, bool] = {}

    try:
        checks["mongodb"] = await get_db_client().ping()
    except RuntimeError:
        checks["mongodb"] = False

    redis_client = get_redis_client()
    checks["redis"] = await redis_client.is_connected() if redis_client else False

    is_ready = checks["mongodb"]
    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={
            "ready": is_ready,
            "timestamp": datetime.now(UTC).isoformat(),
            "checks": checks,
        },
    )


async def not_found_handler(request: Request, _exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={
            "error": "not_found",
            "message": f"The requested path '{request.url.path}' was not found",
            "statusCode": 404,
        },
    )


async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render unexpected failures without leaking internals."""
    logger.error(
        "Unhandled error on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
            "statusCode": 500,
        },
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application."""
    settings = settings or get_settings()

    application = FastAPI(
        title=f"{settings.app_name} API",
        description=(
            "Audio marketplace backend: uploads with derived previews and BPM, "
            "a credit ledger and credit-gated downloads."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        debug=settings.debug,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    application.middleware("http")(request_logging_middleware)

    register_exception_handlers(application)
    application.add_exception_handler(404, not_found_handler)
    application.add_exception_handler(Exception, internal_error_handler)

    application.include_router(api_router, prefix="/api/v1")
    application.add_api_route("/health", health_check, methods=["GET"], tags=["health"])
    application.add_api_route("/ready", readiness_check, methods=["GET"], tags=["health"])

    return application


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level,
        access_log=settings.debug,
    )
