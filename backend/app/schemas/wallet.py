"""
Wallet Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from backend.app.models.ledger_enums import WalletTransactionType


class WalletResponse(BaseModel):
    owner_id: int
    balance: Decimal
    total_credited: Decimal
    total_debited: Decimal
    last_recharge_at: Optional[datetime] = None


class WalletTransactionResponse(BaseModel):
    id: int
    type: WalletTransactionType
    amount: Decimal
    balance_after: Decimal
    reference: str
    shipment_id: Optional[int]
    related_transaction_id: Optional[int]
    actor_name: str
    description: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class WalletTransactionListResponse(BaseModel):
    transactions: List[WalletTransactionResponse]
    balance: Decimal


class WalletCreditRequest(BaseModel):
    """Admin recharge. The reference makes the credit safe to retry."""
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    reference: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=255)


class WalletCreditResponse(BaseModel):
    owner_id: int
    amount: Decimal
    balance: Decimal
    reference: str
    replayed: bool


class WalletConsistencyResponse(BaseModel):
    owner_id: int
    stored_balance: Decimal
    computed_balance: Decimal
    last_balance_after: Decimal
    transaction_count: int
    consistent: bool
