"""
Admin Operations API Endpoints.

Margin reporting, the dead-letter queue of failed post-commit effects and
the audit trail.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc

from backend.app.core.guards import require_admin
from backend.app.db.session import get_db
from backend.app.domain.pricing.pricing_engine import to_money, ZERO
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.schemas.margin import MarginRecordResponse, MarginReportResponse
from backend.app.services.audit import get_audit_trail
from backend.app.services.effect_dispatcher import EffectDispatcher
from backend.app.services.margin_recorder import MarginRecorder

router = APIRouter(prefix="/admin", tags=["Admin - Ops"])


@router.get("/margins", response_model=MarginReportResponse)
async def list_margins(
    shipment_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Per-shipment margin records with totals."""
    records = await MarginRecorder.list_records(db, shipment_id=shipment_id, limit=limit)
    price = sum((to_money(r.customer_price) for r in records), ZERO)
    cost = sum((to_money(r.courier_cost) for r in records), ZERO)
    return MarginReportResponse(
        records=[MarginRecordResponse.model_validate(r) for r in records],
        total_customer_price=price,
        total_courier_cost=cost,
        total_margin=price - cost,
    )


@router.get("/ops/dlq")
async def list_dlq_items(
    status_filter: Optional[DLQStatus] = Query(DLQStatus.FAILED, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Failed effects waiting for attention."""
    query = select(DeadLetterQueue).order_by(desc(DeadLetterQueue.id)).limit(limit)
    if status_filter:
        query = query.where(DeadLetterQueue.status == status_filter)
    result = await db.execute(query)
    return [
        {
            "id": item.id,
            "task_name": item.task_name,
            "error_message": item.error_message,
            "payload": item.payload,
            "status": item.status,
            "retry_count": item.retry_count,
            "created_at": item.created_at,
        }
        for item in result.scalars().all()
    ]


@router.post("/ops/dlq/{dlq_id}/retry")
async def retry_dlq_item(
    dlq_id: int = Path(..., description="DLQ Item ID"),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Redeliver a failed effect now."""
    item = await db.get(DeadLetterQueue, dlq_id)
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="DLQ item not found")
    if item.status == DLQStatus.PROCESSED:
        return {"message": f"Task {item.task_name} already processed", "status": item.status}

    delivered = await EffectDispatcher(db).redeliver(item)
    item = await db.get(DeadLetterQueue, dlq_id)
    return {
        "message": f"Task {item.task_name} {'redelivered' if delivered else 'failed again'}",
        "status": item.status,
        "retry_count": item.retry_count,
    }


@router.get("/audit")
async def list_audit_events(
    target_type: Optional[str] = Query(None, description="e.g. shipment, wallet, rate_card"),
    target_id: Optional[int] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Audit trail of money-moving and admin actions, newest first."""
    events = await get_audit_trail(db, target_type=target_type, target_id=target_id, action=action, limit=limit)
    return [
        {
            "id": e.id,
            "action": e.action,
            "actor_id": e.actor_id,
            "actor_name": e.actor_name,
            "target_type": e.target_type,
            "target_id": e.target_id,
            "metadata": e.meta_data,
            "ip_address": e.ip_address,
            "timestamp": e.timestamp,
        }
        for e in events
    ]
