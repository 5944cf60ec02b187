"""
Inventory API Endpoints.

Brands manage their own stock. Admins may act for a brand by passing brand_id.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from backend.app.core.dependencies import get_current_actor
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.guards import require_role
from backend.app.db.session import get_db
from backend.app.domain.actor import Actor
from backend.app.domain.ledger.inventory_ledger import InventoryLedger
from backend.app.models.enums import UserRole
from backend.app.models.inventory import InventoryBalance
from backend.app.models.part import Part
from backend.app.schemas.inventory import (
    InventoryBalanceResponse, InventoryLedgerEntryResponse, InventoryLedgerResponse, StockAddRequest,
)
from backend.app.services.audit import log_event, AuditAction

router = APIRouter(prefix="/inventory", tags=["Inventory"])

inventory_roles = require_role([UserRole.BRAND, UserRole.SUPER_ADMIN])


def _brand_scope(current_user: dict, brand_id: Optional[int]) -> int:
    if current_user["role"] == UserRole.BRAND.value:
        return current_user["user_id"]
    if brand_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="brand_id is required for admins")
    return brand_id


async def _get_part(db: AsyncSession, brand_id: int, part_id: int) -> Part:
    part = await db.get(Part, part_id)
    if part is None or part.brand_id != brand_id:
        raise ResourceNotFoundError("Part", part_id)
    return part


def _balance_response(balance: InventoryBalance, part: Optional[Part] = None) -> InventoryBalanceResponse:
    return InventoryBalanceResponse(
        brand_id=balance.brand_id,
        part_id=balance.part_id,
        part_code=part.code if part else None,
        part_name=part.name if part else None,
        on_hand=balance.on_hand,
        reserved=balance.reserved,
        available=balance.available,
    )


@router.get("", response_model=List[InventoryBalanceResponse])
async def list_inventory(
    brand_id: Optional[int] = Query(None, description="Admins only"),
    current_user: dict = Depends(inventory_roles),
    db: AsyncSession = Depends(get_db)
):
    """Stock balances for every part of the brand."""
    brand_id = _brand_scope(current_user, brand_id)
    result = await db.execute(
        select(InventoryBalance, Part)
        .join(Part, Part.id == InventoryBalance.part_id)
        .where(InventoryBalance.brand_id == brand_id)
        .order_by(Part.code)
    )
    return [_balance_response(balance, part) for balance, part in result.all()]


@router.get("/{part_id}/ledger", response_model=InventoryLedgerResponse)
async def get_part_ledger(
    part_id: int = Path(..., description="Part ID"),
    brand_id: Optional[int] = Query(None, description="Admins only"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(inventory_roles),
    db: AsyncSession = Depends(get_db)
):
    """Current balance and movement history of one part, newest first."""
    brand_id = _brand_scope(current_user, brand_id)
    part = await _get_part(db, brand_id, part_id)
    balance = await InventoryLedger.get_balance(db, brand_id, part_id)
    entries = await InventoryLedger.list_entries(db, brand_id, part_id, limit=limit)
    return InventoryLedgerResponse(
        balance=_balance_response(balance, part),
        entries=[InventoryLedgerEntryResponse.model_validate(e) for e in entries],
    )


@router.post("/{part_id}/stock", response_model=InventoryBalanceResponse, status_code=status.HTTP_201_CREATED)
async def add_stock(
    request: Request,
    payload: StockAddRequest,
    part_id: int = Path(..., description="Part ID"),
    brand_id: Optional[int] = Query(None, description="Admins only"),
    current_user: dict = Depends(inventory_roles),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Record received stock (ADD)."""
    brand_id = _brand_scope(current_user, brand_id)
    part = await _get_part(db, brand_id, part_id)
    await InventoryLedger.add_stock(
        db, brand_id, part_id, payload.quantity, actor, source_id=payload.source_id, note=payload.note,
    )
    await db.commit()

    body = _balance_response(await InventoryLedger.get_balance(db, brand_id, part_id), part)
    await log_event(
        db=db,
        action=AuditAction.STOCK_ADDED,
        actor_id=actor.id,
        actor_name=actor.name,
        target_type="part",
        target_id=part_id,
        metadata={"brand_id": brand_id, "quantity": payload.quantity, "on_hand": body.on_hand},
        ip_address=request.client.host if request.client else None,
    )
    return body
