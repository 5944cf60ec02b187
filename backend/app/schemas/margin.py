"""
Margin Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional, List


class MarginRecordResponse(BaseModel):
    id: int
    shipment_id: int
    box_id: Optional[int]
    customer_price: Decimal
    courier_cost: Decimal
    margin: Decimal
    margin_percent: Decimal
    tracking_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class MarginReportResponse(BaseModel):
    records: List[MarginRecordResponse]
    total_customer_price: Decimal
    total_courier_cost: Decimal
    total_margin: Decimal
