"""
FastAPI Application Entry Point.

This is the main application file for the SpareFlow fulfillment backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.core.redis_client import ping_redis
from backend.app.db.session import engine, Base
from backend.app.integrations.courier.registry import reset_courier_gateway
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from backend.app.models.user import User
from backend.app.models.audit_log import AuditLog
from backend.app.models.brand_authorization import BrandAuthorization
from backend.app.models.part import Part
from backend.app.models.rate_card import RateCard  # before shipments for FK
from backend.app.models.shipment import Shipment, Box, BoxPart, ShipmentStatusEvent
from backend.app.models.inventory import InventoryBalance, InventoryLedgerEntry, InventoryReservation
from backend.app.models.wallet import WalletAccount, WalletTransaction
from backend.app.models.margin_record import MarginRecord
from backend.app.models.dlq import DeadLetterQueue
from backend.app.models.notification import Notification

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables on startup.
    2. Closes the courier client on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("%s started (courier adapter: %s)", settings.app_name, settings.courier_adapter)
    yield
    await reset_courier_gateway()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Shipment fulfillment and ledger orchestration for SpareFlow",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Redis is reported but not required: it only backs the idempotency cache.
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if await ping_redis() else "down",
        "courier_adapter": settings.courier_adapter,
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
