"""
Notification API Endpoints.

In-app inbox fed by the notification emitter. Every party sees only its own
rows; event_kind filters by fulfillment event (ShipmentCreated,
ShipmentStatusChanged, WalletDebited, WalletCredited).
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.dependencies import get_current_user
from backend.app.db.session import get_db
from backend.app.domain.shipments.effects import EFFECT_TYPES
from backend.app.services.notification_service import NotificationService
from backend.app.schemas.notification import NotificationResponse, UnreadCountResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    event_kind: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    if event_kind and event_kind not in EFFECT_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown event kind: {event_kind}")
    return await NotificationService.list_for_user(
        db, current_user["user_id"], unread_only=unread_only, event_kind=event_kind, limit=limit
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    count = await NotificationService.unread_count(db, current_user["user_id"])
    return UnreadCountResponse(unread=count)


@router.patch("/read-all")
async def mark_all_notifications_read(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    count = await NotificationService.mark_all_read(db, current_user["user_id"])
    await db.commit()
    return {"status": "success", "count": count}


@router.patch("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Mark one notification read. Another party's notification is a 404."""
    if not await NotificationService.mark_read(db, notification_id, current_user["user_id"]):
        raise HTTPException(status_code=404, detail="Notification not found")

    await db.commit()
    return {"status": "success"}
