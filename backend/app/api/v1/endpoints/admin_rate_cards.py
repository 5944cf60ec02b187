"""
Admin Rate Card API Endpoints.

Rate cards are never edited in place: a change is a new card plus
deactivation of the old one, so every shipment keeps pointing at the card
it was priced with.
"""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc

from backend.app.core.exceptions import ResourceNotFoundError, ShipmentValidationError
from backend.app.core.guards import require_admin
from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.models.rate_card import RateCard
from backend.app.models.shipment_enums import ShipmentType
from backend.app.models.user import User
from backend.app.schemas.rate_card import RateCardCreate, RateCardResponse
from backend.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/admin/rate-cards", tags=["Admin - Rate Cards"])


@router.post("", response_model=RateCardResponse, status_code=status.HTTP_201_CREATED)
async def create_rate_card(
    request: Request,
    payload: RateCardCreate,
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Create a global or brand-specific rate card."""
    if payload.brand_id is not None:
        brand = await db.get(User, payload.brand_id)
        if brand is None or brand.role != UserRole.BRAND:
            raise ShipmentValidationError(
                f"Party {payload.brand_id} is not a brand", details={"brand_id": payload.brand_id}
            )

    card = RateCard(
        **payload.model_dump(exclude={"effective_from"}),
        effective_from=payload.effective_from or datetime.now(timezone.utc),
        is_active=True,
        created_by_admin_id=current_user["user_id"],
    )
    db.add(card)
    await db.commit()
    await db.refresh(card)

    await log_event(
        db=db,
        action=AuditAction.RATE_CARD_CREATED,
        actor_id=current_user["user_id"],
        actor_name=current_user["sub"],
        target_type="rate_card",
        target_id=card.id,
        metadata={
            "name": card.name,
            "shipment_type": card.shipment_type.value,
            "payer_role": card.payer_role.value if card.payer_role else None,
            "brand_id": card.brand_id,
        },
        ip_address=request.client.host if request.client else None,
    )
    return RateCardResponse.model_validate(card)


@router.get("", response_model=List[RateCardResponse])
async def list_rate_cards(
    shipment_type: Optional[ShipmentType] = Query(None),
    brand_id: Optional[int] = Query(None),
    active_only: bool = Query(True),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """List rate cards, newest first."""
    query = select(RateCard).order_by(desc(RateCard.id))
    if shipment_type:
        query = query.where(RateCard.shipment_type == shipment_type)
    if brand_id is not None:
        query = query.where(RateCard.brand_id == brand_id)
    if active_only:
        query = query.where(RateCard.is_active == True)

    result = await db.execute(query)
    return [RateCardResponse.model_validate(c) for c in result.scalars().all()]


@router.post("/{card_id}/deactivate", response_model=RateCardResponse)
async def deactivate_rate_card(
    request: Request,
    card_id: int = Path(..., description="Rate card ID"),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Stop using a rate card for new shipments."""
    card = await db.get(RateCard, card_id)
    if card is None:
        raise ResourceNotFoundError("RateCard", card_id)

    if card.is_active:
        card.is_active = False
        await db.commit()
        await log_event(
            db=db,
            action=AuditAction.RATE_CARD_DEACTIVATED,
            actor_id=current_user["user_id"],
            actor_name=current_user["sub"],
            target_type="rate_card",
            target_id=card.id,
            ip_address=request.client.host if request.client else None,
        )
    return RateCardResponse.model_validate(card)
