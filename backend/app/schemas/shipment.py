"""
Shipment Schemas.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict

from backend.app.models.enums import UserRole
from backend.app.models.shipment_enums import (
    ShipmentType, ShipmentDirection, ReturnReason, ShipmentPriority, ShipmentStatus, BoxStatus, ActorKind,
)


class PartQuantity(BaseModel):
    part_id: int
    quantity: int = Field(..., gt=0)


class BoxAllocation(BaseModel):
    """Which parts go into one box. Omit boxes entirely to ship everything in one box."""
    parts: List[PartQuantity] = Field(..., min_length=1)
    length_cm: Optional[Decimal] = Field(None, gt=0)
    width_cm: Optional[Decimal] = Field(None, gt=0)
    height_cm: Optional[Decimal] = Field(None, gt=0)


class ShipmentCreate(BaseModel):
    """Schema for creating a shipment. The initiator is the authenticated party."""
    recipient_id: int
    brand_id: Optional[int] = Field(None, description="Required when neither party is the brand")
    parts: List[PartQuantity] = Field(..., min_length=1)
    boxes: Optional[List[BoxAllocation]] = None
    priority: ShipmentPriority = ShipmentPriority.MEDIUM
    return_reason: Optional[ReturnReason] = None
    insurance_requested: bool = False
    declared_value: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=120)

    @field_validator("parts")
    @classmethod
    def unique_parts(cls, v: List[PartQuantity]) -> List[PartQuantity]:
        ids = [p.part_id for p in v]
        if len(ids) != len(set(ids)):
            raise ValueError("Each part may only be listed once")
        return v


class BulkShipmentCreate(BaseModel):
    shipments: List[ShipmentCreate] = Field(..., min_length=1)
    batch_key: Optional[str] = Field(None, min_length=1, max_length=100)


class CostBreakdownResponse(BaseModel):
    base_cost: Decimal
    weight_charge: Decimal
    express_charge: Decimal
    remote_surcharge: Decimal
    markup: Decimal
    courier_charge: Decimal
    insurance_premium: Decimal
    insurance_gst: Decimal
    total: Decimal
    min_charge_applied: bool
    insurance_applied: bool
    insurance_skipped_reason: Optional[str]
    pricing_source: str
    rate_card_id: Optional[int]
    applied_rules: List[str]

    class Config:
        from_attributes = True


class ShipmentEstimateResponse(BaseModel):
    shipment_type: ShipmentType
    direction: ShipmentDirection
    return_reason: Optional[ReturnReason]
    courier_payer: UserRole
    payer_account_id: int
    payer_justification: str
    box_count: int
    total_weight: Decimal
    declared_value: Decimal
    is_remote_area: bool
    cost: CostBreakdownResponse
    wallet_balance: Decimal
    sufficient_balance: bool


class BoxPartResponse(BaseModel):
    part_id: int
    quantity: int

    class Config:
        from_attributes = True


class BoxResponse(BaseModel):
    id: int
    sequence: int
    weight_kg: Decimal
    value: Decimal
    tracking_id: Optional[str]
    status: BoxStatus
    parts: List[BoxPartResponse]

    class Config:
        from_attributes = True


class InsuranceResponse(BaseModel):
    type: str
    declared_value: Optional[Decimal] = None
    cost: Optional[Decimal] = None

    class Config:
        from_attributes = True


class CourierBookingResponse(BaseModel):
    """Courier booking outcome. success=False means the shipment is AWB_PENDING."""
    success: bool
    tracking_id: Optional[str] = None
    tracking_url: Optional[str] = None
    error: Optional[str] = None


class ShipmentResponse(BaseModel):
    id: int
    brand_id: int
    initiator_id: int
    initiator_role: UserRole
    recipient_id: int
    recipient_role: UserRole
    shipment_type: ShipmentType
    direction: ShipmentDirection
    return_reason: Optional[ReturnReason]
    courier_payer: UserRole
    payer_account_id: int
    priority: ShipmentPriority
    status: ShipmentStatus
    total_weight: Decimal
    total_value: Decimal
    declared_value: Decimal
    is_remote_area: bool
    insurance: InsuranceResponse
    base_cost: Decimal
    weight_charge: Decimal
    express_charge: Decimal
    remote_surcharge: Decimal
    markup: Decimal
    insurance_premium: Decimal
    insurance_gst: Decimal
    estimated_cost: Decimal
    charged_amount: Decimal
    actual_courier_cost: Optional[Decimal]
    pricing_source: str
    tracking_id: Optional[str]
    tracking_url: Optional[str]
    courier_reference: Optional[str]
    courier_attempts: int
    last_courier_error: Optional[str]
    idempotency_key: str
    bulk_reference: Optional[str]
    notes: Optional[str]
    boxes: List[BoxResponse]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ShipmentCreateResponse(BaseModel):
    shipment: ShipmentResponse
    dtdc: Optional[CourierBookingResponse]
    replayed: bool = False
    wallet_balance: Optional[Decimal] = None


class StatusEventResponse(BaseModel):
    from_status: Optional[ShipmentStatus]
    to_status: ShipmentStatus
    actor_kind: ActorKind
    actor_id: Optional[int]
    actor_name: str
    reason: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ShipmentDetailResponse(ShipmentResponse):
    status_history: List[StatusEventResponse] = []


class ShipmentListResponse(BaseModel):
    shipments: List[ShipmentResponse]
    total: int
    page: int
    page_size: int


class BulkItemResult(BaseModel):
    index: int
    success: bool
    shipment: Optional[ShipmentResponse] = None
    dtdc: Optional[CourierBookingResponse] = None
    error_code: Optional[str] = None
    error: Optional[str] = None


class BulkSummary(BaseModel):
    requested: int
    created: int
    failed: int
    booked: int
    awb_pending: int
    total_charged: Decimal
    wallet_balances: Dict[int, Decimal]


class BulkShipmentResponse(BaseModel):
    batch_key: str
    replayed: bool = False
    results: List[BulkItemResult]
    summary: BulkSummary


class ShipmentCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ShipmentStatusUpdate(BaseModel):
    status: ShipmentStatus
    reason: Optional[str] = Field(None, max_length=500)
