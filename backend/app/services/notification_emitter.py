"""
Notification Emitter.

Fire-and-forget delivery of fulfillment events. Push, email and SMS delivery
live outside this service; the bundled emitter writes one in-app
notification row per recipient.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.domain.shipments.effects import (
    Effect, ShipmentCreated, ShipmentStatusChanged, WalletDebited, WalletCredited,
)
from backend.app.models.notification import NotificationType
from backend.app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


def render(effect: Effect) -> List[Tuple[int, NotificationType, str, str]]:
    """(recipient, type, title, message) rows for an effect."""
    if isinstance(effect, ShipmentCreated):
        message = f"Shipment #{effect.shipment_id} created ({effect.status})"
        if effect.tracking_id:
            message += f", tracking {effect.tracking_id}"
        return [
            (effect.initiator_id, NotificationType.SHIPMENT_UPDATE, "Shipment created", message),
            (effect.recipient_id, NotificationType.SHIPMENT_UPDATE, "Incoming shipment", message),
        ]
    if isinstance(effect, ShipmentStatusChanged):
        message = f"Shipment #{effect.shipment_id} is now {effect.to_status}"
        if effect.reason:
            message += f": {effect.reason}"
        kind = NotificationType.WARNING if effect.to_status in ("AWB_PENDING", "RTO", "FAILED") else NotificationType.SHIPMENT_UPDATE
        return [(uid, kind, "Shipment status update", message) for uid in effect.recipients]
    if isinstance(effect, WalletDebited):
        return [(
            effect.owner_id, NotificationType.WALLET_UPDATE, "Wallet debited",
            f"{effect.amount} debited ({effect.reference}). Balance: {effect.balance_after}",
        )]
    if isinstance(effect, WalletCredited):
        return [(
            effect.owner_id, NotificationType.WALLET_UPDATE, "Wallet credited",
            f"{effect.amount} credited ({effect.reference}). Balance: {effect.balance_after}",
        )]
    return []


class NotificationEmitter(ABC):

    @abstractmethod
    async def emit(self, db: AsyncSession, effect: Effect) -> None:
        ...


class InAppNotificationEmitter(NotificationEmitter):
    """Writes one in-app notification per recipient. Caller commits."""

    async def emit(self, db: AsyncSession, effect: Effect) -> None:
        rows = render(effect)
        seen = set()
        for user_id, type_, title, message in rows:
            if user_id in seen:
                continue
            seen.add(user_id)
            await NotificationService.create_notification(
                db,
                user_id=user_id,
                title=title,
                message=message,
                type=type_,
                event_kind=effect.kind,
                metadata=effect.payload(),
            )
        logger.info("Notification %s sent to %d recipient(s)", effect.kind, len(seen))
