"""Audit ledger API - Main FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy import text

from audit_ledger.logging_config import configure_logging
from audit_ledger.middleware.correlation import CorrelationIDMiddleware
from audit_ledger.routes import ledger
from audit_ledger.settings import get_settings

configure_logging()
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting audit ledger API...")
    try:
        settings.validate_production_settings()
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise ValueError(f"Invalid configuration: {e}") from e

    yield

    logger.info("Shutting down audit ledger API...")
    from audit_ledger.db.session import dispose_engine

    await dispose_engine()


app = FastAPI(
    title="Audit Ledger API",
    description="Tamper-evident audit chain with offline merge and archival export",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(CorrelationIDMiddleware)

# Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

app.include_router(ledger.router)


@app.get("/health")
async def health_check():
    """Health check endpoint (basic liveness)."""
    return {
        "status": "healthy",
        "service": "audit-ledger",
        "version": "0.1.0",
    }


@app.get("/ready")
async def readiness_check():
    """Readiness check endpoint (verifies dependencies)."""
    import redis

    from audit_ledger.db.session import get_session
    from audit_ledger.storage.service import get_storage_service

    checks = {
        "database": False,
        "redis": False,
        "object_storage": False,
    }

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error(f"Database check failed: {e}")

    try:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        redis_client.ping()
        checks["redis"] = True
    except Exception as e:
        logger.error(f"Redis check failed: {e}")

    try:
        storage = get_storage_service()
        if storage.client.bucket_exists(storage.bucket):
            checks["object_storage"] = True
        else:
            logger.warning(f"Object storage bucket {storage.bucket} does not exist")
    except Exception as e:
        logger.error(f"Object storage check failed: {e}")

    all_ready = all(checks.values())
    return JSONResponse(
        content={
            "status": "ready" if all_ready else "not_ready",
            "checks": checks,
        },
        status_code=200 if all_ready else 503,
    )


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Audit Ledger API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
