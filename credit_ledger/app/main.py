"""
FastAPI Application Entry Point.

This is the main application file for the Credit Ledger Service.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from credit_ledger.app.core.config import settings
from credit_ledger.app.api.v1.router import router as api_v1_router
from credit_ledger.app.core.dependencies import build_credit_services
from credit_ledger.app.core.observability import ObservabilityMiddleware, configure_logging
from credit_ledger.app.db.session import engine, AsyncSessionLocal
from credit_ledger.app.services.events import RedisEventPublisher, build_redis_client, ping_redis
from credit_ledger.app.core.exceptions import (
    CreditError,
    credit_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Builds the credit services over the configured database.
    2. Provisions the ledger schema and seeds action costs.
    3. Forwards credit events to Redis when it is reachable.
    """
    configure_logging()
    services = build_credit_services(engine, session_factory=AsyncSessionLocal)
    app.state.credit_services = services

    await services.provisioner.create_tables()

    redis_client = None
    if settings.publish_events_to_redis:
        redis_client = build_redis_client()
        if await ping_redis(redis_client):
            services.events.subscribe(RedisEventPublisher(redis_client))
        else:
            logger.warning("Redis unreachable; credit events stay in-process")

    yield

    if redis_client is not None:
        await redis_client.aclose()
    await engine.dispose()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Multi-bucket credit ledger with tiered allocations and an audit trail",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(CreditError, credit_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and ledger provisioning state
    """
    services = getattr(app.state, "credit_services", None)
    provisioning = (await services.provisioner.status()).value if services else None
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "provisioning": provisioning,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint.

    Returns:
        dict: Welcome message and API documentation links
    """
    return {
        "message": "Welcome to the Credit Ledger Service API",
        "docs": "/docs",
        "health": "/health",
    }
