"""
Inventory Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List

from backend.app.models.ledger_enums import InventoryAction


class InventoryBalanceResponse(BaseModel):
    brand_id: int
    part_id: int
    part_code: Optional[str] = None
    part_name: Optional[str] = None
    on_hand: int
    reserved: int
    available: int


class InventoryLedgerEntryResponse(BaseModel):
    id: int
    action: InventoryAction
    quantity: int
    source_id: Optional[int]
    destination_id: Optional[int]
    on_hand_after: int
    reserved_after: int
    shipment_id: Optional[int]
    actor_name: str
    note: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class InventoryLedgerResponse(BaseModel):
    balance: InventoryBalanceResponse
    entries: List[InventoryLedgerEntryResponse]


class StockAddRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    source_id: Optional[int] = Field(None, description="Supplier or warehouse the stock came from")
    note: Optional[str] = Field(None, max_length=500)
