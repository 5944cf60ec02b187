"""
Wallet API Endpoints.

Parties read their own wallet; admins recharge wallets and audit the ledger.
"""

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.dependencies import get_current_actor
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.guards import require_role, require_admin, SHIPPING_ROLES
from backend.app.db.session import get_db
from backend.app.domain.actor import Actor
from backend.app.domain.ledger.wallet_ledger import WalletLedger
from backend.app.domain.pricing.pricing_engine import to_money, ZERO
from backend.app.domain.shipments.effects import WalletCredited
from backend.app.models.user import User
from backend.app.schemas.wallet import (
    WalletResponse, WalletTransactionResponse, WalletTransactionListResponse,
    WalletCreditRequest, WalletCreditResponse, WalletConsistencyResponse,
)
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.effect_dispatcher import EffectDispatcher

router = APIRouter(prefix="/wallet", tags=["Wallet"])
admin_router = APIRouter(prefix="/admin/wallets", tags=["Admin - Wallets"])


@router.get("", response_model=WalletResponse)
async def get_my_wallet(
    current_user: dict = Depends(require_role(SHIPPING_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """Current balance and lifetime totals. A party with no wallet yet has a zero balance."""
    owner_id = current_user["user_id"]
    account = await WalletLedger.get_account(db, owner_id)
    if account is None:
        return WalletResponse(owner_id=owner_id, balance=ZERO, total_credited=ZERO, total_debited=ZERO)
    return WalletResponse(
        owner_id=owner_id,
        balance=to_money(account.balance),
        total_credited=to_money(account.total_credited),
        total_debited=to_money(account.total_debited),
        last_recharge_at=account.last_recharge_at,
    )


@router.get("/transactions", response_model=WalletTransactionListResponse)
async def list_my_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_role(SHIPPING_ROLES)),
    db: AsyncSession = Depends(get_db)
):
    """Wallet transactions, newest first."""
    owner_id = current_user["user_id"]
    transactions = await WalletLedger.list_transactions(db, owner_id, limit=limit, offset=offset)
    return WalletTransactionListResponse(
        transactions=[WalletTransactionResponse.model_validate(t) for t in transactions],
        balance=await WalletLedger.get_balance(db, owner_id),
    )


@admin_router.post("/{owner_id}/credit", response_model=WalletCreditResponse)
async def credit_wallet(
    request: Request,
    payload: WalletCreditRequest,
    owner_id: int = Path(..., description="Wallet owner (party) ID"),
    current_user: dict = Depends(require_admin),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db)
):
    """Recharge a party's wallet. Re-sending the same reference does not credit twice."""
    owner = await db.get(User, owner_id)
    if owner is None:
        raise ResourceNotFoundError("User", owner_id)

    result = await WalletLedger.credit(
        db, owner_id, payload.amount, payload.reference, actor, description=payload.description,
    )
    await db.commit()

    body = WalletCreditResponse(
        owner_id=owner_id,
        amount=to_money(payload.amount),
        balance=result.balance_after,
        reference=payload.reference,
        replayed=result.replayed,
    )
    if result.replayed:
        return body

    await EffectDispatcher(db).dispatch([
        WalletCredited(
            owner_id=owner_id,
            amount=body.amount,
            balance_after=body.balance,
            reference=payload.reference,
        )
    ])
    await log_event(
        db=db,
        action=AuditAction.WALLET_CREDITED,
        actor_id=actor.id,
        actor_name=actor.name,
        target_type="wallet",
        target_id=owner_id,
        metadata={"amount": str(body.amount), "reference": payload.reference},
        ip_address=request.client.host if request.client else None,
    )
    return body


@admin_router.get("/{owner_id}/consistency", response_model=WalletConsistencyResponse)
async def check_wallet_consistency(
    owner_id: int = Path(..., description="Wallet owner (party) ID"),
    current_user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db)
):
    """Compare the stored balance with a fold of the transaction log."""
    report = await WalletLedger.verify_consistency(db, owner_id)
    return WalletConsistencyResponse(
        owner_id=report.owner_id,
        stored_balance=report.stored_balance,
        computed_balance=report.computed_balance,
        last_balance_after=report.last_balance_after,
        transaction_count=report.transaction_count,
        consistent=report.consistent,
    )
