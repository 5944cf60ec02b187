"""
Shipment API Endpoints.

Parties create, inspect, retry and cancel shipments. Courier-reported status
changes are applied by admins (or the tracking webhook relay).
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.dependencies import get_current_actor
from backend.app.core.exceptions import ShipmentValidationError
from backend.app.core.guards import require_role, require_admin, SHIPPING_ROLES
from backend.app.core.redis_client import get_redis
from backend.app.db.session import get_db
from backend.app.domain.actor import Actor
from backend.app.domain.ledger.wallet_ledger import WalletLedger
from backend.app.domain.shipments.orchestrator import ShipmentOrchestrator, ShipmentOutcome, BulkOutcome
from backend.app.integrations.courier.registry import get_courier_gateway
from backend.app.models.shipment_enums import ShipmentStatus
from backend.app.schemas.shipment import (
    ShipmentCreate, BulkShipmentCreate, ShipmentCancelRequest, ShipmentStatusUpdate,
    ShipmentEstimateResponse, CostBreakdownResponse, ShipmentResponse, ShipmentCreateResponse,
    ShipmentDetailResponse, ShipmentListResponse, StatusEventResponse, CourierBookingResponse,
    BulkShipmentResponse, BulkItemResult, BulkSummary,
)
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.effect_dispatcher import EffectDispatcher
from backend.app.services.idempotency_cache import IdempotencyCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipments", tags=["Shipments"])


def get_orchestrator(gateway=Depends(get_courier_gateway)) -> ShipmentOrchestrator:
    return ShipmentOrchestrator(gateway)


def _booking(outcome: ShipmentOutcome) -> Optional[CourierBookingResponse]:
    if outcome.booking is None:
        shipment = outcome.shipment
        if shipment.tracking_id is None and shipment.last_courier_error is None:
            return None
        return CourierBookingResponse(
            success=shipment.tracking_id is not None,
            tracking_id=shipment.tracking_id,
            tracking_url=shipment.tracking_url,
            error=shipment.last_courier_error,
        )
    b = outcome.booking
    return CourierBookingResponse(success=b.success, tracking_id=b.tracking_id, tracking_url=b.tracking_url, error=b.error)


def _create_response(outcome: ShipmentOutcome) -> ShipmentCreateResponse:
    return ShipmentCreateResponse(
        shipment=ShipmentResponse.model_validate(outcome.shipment),
        dtdc=_booking(outcome),
        replayed=outcome.replayed,
        wallet_balance=outcome.wallet_balance,
    )


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/estimate", response_model=ShipmentEstimateResponse)
async def estimate_shipment(
    payload: ShipmentCreate,
    current_user: dict = Depends(require_role(SHIPPING_ROLES)),
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """
    Classify and price a shipment without creating it.

    Nothing is reserved or debited. The payer's current balance is returned so
    the caller can top up before creating.
    """
    plan, balance = await orchestrator.estimate(db, payload, actor)
    return ShipmentEstimateResponse(
        shipment_type=plan.classification.shipment_type,
        direction=plan.classification.direction,
        return_reason=plan.classification.return_reason,
        courier_payer=plan.payer.payer,
        payer_account_id=plan.payer_account_id,
        payer_justification=plan.payer.justification,
        box_count=len(plan.boxes),
        total_weight=plan.total_weight,
        declared_value=plan.declared_value,
        is_remote_area=plan.remote,
        cost=CostBreakdownResponse.model_validate(plan.cost),
        wallet_balance=balance,
        sufficient_balance=balance >= plan.cost.total,
    )


@router.post("", response_model=ShipmentCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    payload: ShipmentCreate,
    request: Request,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: dict = Depends(require_role(SHIPPING_ROLES)),
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    redis=Depends(get_redis),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a shipment: validate, price, debit the payer, reserve stock and book
    the courier.

    A courier failure is a partial success: the shipment is returned in
    AWB_PENDING with dtdc.success=false. Retrying with the same
    Idempotency-Key returns the original shipment without charging again.
    """
    key = idempotency_key or payload.idempotency_key
    if not key:
        raise ShipmentValidationError("Idempotency-Key header or idempotency_key is required")

    cache = IdempotencyCache(redis)
    cached = await cache.get("shipment", actor.id, key)
    if cached is not None:
        response.status_code = status.HTTP_200_OK
        cached["replayed"] = True
        return cached

    outcome = await orchestrator.create_shipment(db, payload, actor, idempotency_key=key)
    body = _create_response(outcome)
    if outcome.replayed:
        response.status_code = status.HTTP_200_OK
        return body

    await EffectDispatcher(db).dispatch(outcome.effects)
    await cache.set("shipment", actor.id, key, body.model_dump(mode="json"))

    await log_event(
        db=db,
        action=AuditAction.SHIPMENT_CREATED,
        actor_id=actor.id,
        actor_name=actor.name,
        target_type="shipment",
        target_id=body.shipment.id,
        metadata={
            "status": body.shipment.status.value,
            "charged_amount": str(body.shipment.charged_amount),
            "payer_account_id": body.shipment.payer_account_id,
            "tracking_id": body.shipment.tracking_id,
        },
        ip_address=_client_ip(request),
    )
    return body


def _bulk_response(outcome: BulkOutcome, balances) -> BulkShipmentResponse:
    results = []
    booked = pending = 0
    for item in outcome.items:
        if item.shipment is None:
            results.append(BulkItemResult(
                index=item.index,
                success=False,
                error_code=item.error.error_code if item.error else None,
                error=item.error.message if item.error else None,
            ))
            continue
        if item.shipment.status == ShipmentStatus.AWB_PENDING:
            pending += 1
        elif item.shipment.tracking_id:
            booked += 1
        results.append(BulkItemResult(
            index=item.index,
            success=True,
            shipment=ShipmentResponse.model_validate(item.shipment),
            dtdc=_booking(ShipmentOutcome(shipment=item.shipment, booking=item.booking)),
        ))

    created = len(outcome.created)
    return BulkShipmentResponse(
        batch_key=outcome.batch_key,
        replayed=outcome.replayed,
        results=results,
        summary=BulkSummary(
            requested=len(outcome.items),
            created=created,
            failed=len(outcome.items) - created,
            booked=booked,
            awb_pending=pending,
            total_charged=outcome.total_charged,
            wallet_balances=balances,
        ),
    )


@router.post("/bulk", response_model=BulkShipmentResponse, status_code=status.HTTP_201_CREATED)
async def create_bulk_shipments(
    payload: BulkShipmentCreate,
    request: Request,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    current_user: dict = Depends(require_role(SHIPPING_ROLES)),
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """
    Create many shipments with one wallet deduction per payer.

    Items failing validation are reported per index. If any payer cannot cover
    the batch total nothing is created (402).
    """
    batch_key = payload.batch_key or idempotency_key
    if not batch_key:
        raise ShipmentValidationError("Idempotency-Key header or batch_key is required")

    outcome = await orchestrator.create_bulk(db, payload.shipments, batch_key, actor)

    balances = dict(outcome.wallet_balances)
    if outcome.replayed:
        for shipment in outcome.created:
            if shipment.payer_account_id not in balances:
                balances[shipment.payer_account_id] = await WalletLedger.get_balance(db, shipment.payer_account_id)
    body = _bulk_response(outcome, balances)
    if outcome.replayed:
        response.status_code = status.HTTP_200_OK
        return body

    await EffectDispatcher(db).dispatch(outcome.effects)
    await log_event(
        db=db,
        action=AuditAction.BULK_SHIPMENTS_CREATED,
        actor_id=actor.id,
        actor_name=actor.name,
        target_type="bulk",
        metadata={
            "batch_key": batch_key,
            "created": body.summary.created,
            "failed": body.summary.failed,
            "total_charged": str(body.summary.total_charged),
        },
        ip_address=_client_ip(request),
    )
    return body


@router.get("", response_model=ShipmentListResponse)
async def list_shipments(
    status_filter: Optional[ShipmentStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """List shipments the caller initiated, receives, pays for or owns as brand."""
    shipments, total = await orchestrator.list_shipments(db, actor, status_filter, page, page_size)
    return ShipmentListResponse(
        shipments=[ShipmentResponse.model_validate(s) for s in shipments],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{shipment_id}", response_model=ShipmentDetailResponse)
async def get_shipment(
    shipment_id: int = Path(..., description="Shipment ID"),
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """Shipment with boxes and its full status history."""
    shipment = await orchestrator.get_shipment(db, shipment_id, actor)
    detail = ShipmentDetailResponse.model_validate(shipment)
    detail.status_history = [
        StatusEventResponse.model_validate(e) for e in await orchestrator.status_history(db, shipment_id)
    ]
    return detail


@router.post("/{shipment_id}/retry-awb", response_model=ShipmentCreateResponse)
async def retry_awb(
    request: Request,
    shipment_id: int = Path(..., description="Shipment ID"),
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """Retry the courier booking of an AWB_PENDING shipment. Never charges again."""
    outcome = await orchestrator.retry_booking(db, shipment_id, actor)
    body = _create_response(outcome)
    if outcome.replayed:
        return body

    await EffectDispatcher(db).dispatch(outcome.effects)
    await log_event(
        db=db,
        action=AuditAction.AWB_RETRIED,
        actor_id=actor.id,
        actor_name=actor.name,
        target_type="shipment",
        target_id=shipment_id,
        metadata={
            "success": body.dtdc.success if body.dtdc else False,
            "attempts": body.shipment.courier_attempts,
            "error": body.dtdc.error if body.dtdc else None,
        },
        ip_address=_client_ip(request),
    )
    return body


@router.post("/{shipment_id}/cancel", response_model=ShipmentCreateResponse)
async def cancel_shipment(
    request: Request,
    shipment_id: int = Path(..., description="Shipment ID"),
    payload: Optional[ShipmentCancelRequest] = None,
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """
    Cancel a shipment before dispatch.

    Releases reserved stock and refunds the charged amount to the payer.
    Cancelling an already cancelled shipment returns it unchanged.
    """
    reason = payload.reason if payload else None
    outcome = await orchestrator.cancel(db, shipment_id, actor, reason)
    body = _create_response(outcome)
    if outcome.replayed:
        return body

    await EffectDispatcher(db).dispatch(outcome.effects)
    await log_event(
        db=db,
        action=AuditAction.SHIPMENT_CANCELLED,
        actor_id=actor.id,
        actor_name=actor.name,
        target_type="shipment",
        target_id=shipment_id,
        metadata={"reason": reason, "refunded": str(body.shipment.charged_amount)},
        ip_address=_client_ip(request),
    )
    return body


@router.post("/{shipment_id}/status", response_model=ShipmentResponse)
async def update_shipment_status(
    request: Request,
    payload: ShipmentStatusUpdate,
    shipment_id: int = Path(..., description="Shipment ID"),
    current_user: dict = Depends(require_admin),
    actor: Actor = Depends(get_current_actor),
    orchestrator: ShipmentOrchestrator = Depends(get_orchestrator),
    db: AsyncSession = Depends(get_db),
):
    """Apply a courier-reported status (DISPATCHED onwards). Admin only."""
    outcome = await orchestrator.apply_courier_status(db, shipment_id, payload.status, actor, payload.reason)
    body = ShipmentResponse.model_validate(outcome.shipment)
    if outcome.replayed:
        return body

    await EffectDispatcher(db).dispatch(outcome.effects)
    await log_event(
        db=db,
        action=AuditAction.SHIPMENT_STATUS_UPDATED,
        actor_id=actor.id,
        actor_name=actor.name,
        target_type="shipment",
        target_id=shipment_id,
        metadata={"status": payload.status.value, "reason": payload.reason},
        ip_address=_client_ip(request),
    )
    return body
