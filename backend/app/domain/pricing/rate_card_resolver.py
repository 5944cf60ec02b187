"""
Rate Card Resolver.

Responsible for determining the applicable rate card for a shipment.
Follows priority:
1. Brand specific card for (type, payer), then (type, any payer)
2. Global card for (type, payer), then (type, any payer)
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from backend.app.core.exceptions import PricingConfigurationError
from backend.app.domain.pricing.pricing_engine import RateTerms
from backend.app.models.enums import UserRole
from backend.app.models.rate_card import RateCard
from backend.app.models.shipment_enums import ShipmentType


class RateCardResolver:

    @staticmethod
    async def resolve(
        db: AsyncSession,
        shipment_type: ShipmentType,
        payer_role: UserRole,
        brand_id: Optional[int] = None,
    ) -> RateTerms:
        """
        Find the currently active rate card.

        Raises:
            PricingConfigurationError: If no active card covers the shipment.
        """
        now = datetime.now(timezone.utc)

        query = select(RateCard).where(
            RateCard.is_active == True,
            RateCard.shipment_type == shipment_type,
            RateCard.effective_from <= now,
            (RateCard.effective_until.is_(None) | (RateCard.effective_until >= now)),
            (RateCard.payer_role.is_(None) | (RateCard.payer_role == payer_role)),
        )
        if brand_id is not None:
            query = query.where(RateCard.brand_id.is_(None) | (RateCard.brand_id == brand_id))
        else:
            query = query.where(RateCard.brand_id.is_(None))

        result = await db.execute(query.order_by(RateCard.effective_from.desc(), RateCard.id.desc()))
        cards = result.scalars().all()

        def rank(card: RateCard) -> int:
            # Lower is more specific
            return (0 if card.brand_id is not None else 2) + (0 if card.payer_role is not None else 1)

        if not cards:
            raise PricingConfigurationError(
                f"No active rate card for {shipment_type.value} shipments paid by {payer_role.value}",
                details={
                    "shipment_type": shipment_type.value,
                    "payer_role": payer_role.value,
                    "brand_id": brand_id,
                },
            )

        # sorted() is stable, so the newest card wins within a rank
        card = sorted(cards, key=rank)[0]
        source = "BRAND_OVERRIDE" if card.brand_id is not None else "GLOBAL"
        return RateTerms.from_rate_card(card, source=source)
