"""
Rate Card Schemas.
"""

from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional

from backend.app.core.config import settings
from backend.app.models.enums import UserRole
from backend.app.models.shipment_enums import ShipmentType


class RateCardCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    shipment_type: ShipmentType
    payer_role: Optional[UserRole] = Field(None, description="Omit to apply to every payer")
    brand_id: Optional[int] = Field(None, description="Omit for the global card")

    base_rate_per_box: Decimal = Field(..., ge=0)
    weight_rate_per_kg: Decimal = Field(..., ge=0)
    free_weight_per_box: Decimal = Field(Decimal("0"), ge=0)
    express_multiplier: Decimal = Field(Decimal("1"), ge=1)
    remote_surcharge_per_box: Decimal = Field(Decimal("0"), ge=0)
    markup_percent: Decimal = Field(Decimal("0"), ge=0)
    min_charge: Decimal = Field(Decimal("0"), ge=0)

    insurance_threshold: Decimal = Field(Decimal(str(settings.default_insurance_threshold)), ge=0)
    insurance_premium_rate: Decimal = Field(Decimal(str(settings.default_insurance_premium_rate)), ge=0, le=1)
    insurance_gst_rate: Decimal = Field(Decimal(str(settings.default_insurance_gst_rate)), ge=0, le=1)

    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None

    @model_validator(mode="after")
    def check_window(self):
        if self.effective_from and self.effective_until and self.effective_until <= self.effective_from:
            raise ValueError("effective_until must be after effective_from")
        return self


class RateCardResponse(BaseModel):
    id: int
    name: str
    shipment_type: ShipmentType
    payer_role: Optional[UserRole]
    brand_id: Optional[int]
    base_rate_per_box: Decimal
    weight_rate_per_kg: Decimal
    free_weight_per_box: Decimal
    express_multiplier: Decimal
    remote_surcharge_per_box: Decimal
    markup_percent: Decimal
    min_charge: Decimal
    insurance_threshold: Decimal
    insurance_premium_rate: Decimal
    insurance_gst_rate: Decimal
    effective_from: datetime
    effective_until: Optional[datetime]
    is_active: bool
    created_by_admin_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True
