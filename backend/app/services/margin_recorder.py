"""
Margin Recorder.

Books profit per shipment (customer price minus courier cost).
Side-effect only: the fulfillment flow never reads these rows.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc

from backend.app.domain.pricing.pricing_engine import to_money, ZERO
from backend.app.models.margin_record import MarginRecord

logger = logging.getLogger(__name__)


class MarginRecorder:

    @staticmethod
    def calculate(customer_price: Decimal, courier_cost: Decimal):
        """Return (margin, margin_percent). Percent is 0 when nothing was charged."""
        customer_price = to_money(customer_price)
        courier_cost = to_money(courier_cost)
        margin = customer_price - courier_cost
        percent = to_money(margin / customer_price * 100) if customer_price > 0 else ZERO
        return margin, percent

    @staticmethod
    async def record(
        db: AsyncSession,
        shipment_id: int,
        customer_price: Decimal,
        courier_cost: Optional[Decimal],
        tracking_id: Optional[str] = None,
        box_id: Optional[int] = None,
    ) -> Optional[MarginRecord]:
        """Persist a margin row. Skipped when the courier did not report a cost."""
        if courier_cost is None:
            logger.info("No courier cost for shipment %s, margin not recorded", shipment_id)
            return None

        margin, percent = MarginRecorder.calculate(customer_price, courier_cost)
        record = MarginRecord(
            shipment_id=shipment_id,
            box_id=box_id,
            customer_price=to_money(customer_price),
            courier_cost=to_money(courier_cost),
            margin=margin,
            margin_percent=percent,
            tracking_id=tracking_id,
        )
        db.add(record)
        await db.flush()
        logger.info("Margin recorded for shipment %s: %s (%s%%)", shipment_id, margin, percent)
        return record

    @staticmethod
    async def list_records(db: AsyncSession, shipment_id: Optional[int] = None, limit: int = 100) -> List[MarginRecord]:
        query = select(MarginRecord).order_by(desc(MarginRecord.id)).limit(limit)
        if shipment_id is not None:
            query = query.where(MarginRecord.shipment_id == shipment_id)
        result = await db.execute(query)
        return list(result.scalars().all())
