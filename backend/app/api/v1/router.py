"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    shipments, wallet, inventory, admin_rate_cards, admin_ops, notifications,
)

router = APIRouter()

# Shipment fulfillment
router.include_router(shipments.router)

# Ledgers
router.include_router(wallet.router)
router.include_router(wallet.admin_router)
router.include_router(inventory.router)

# Admin
router.include_router(admin_rate_cards.router)
router.include_router(admin_ops.router)

# In-app notifications
router.include_router(notifications.router)
