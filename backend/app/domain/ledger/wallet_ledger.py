"""
Wallet Ledger (Domain Logic).

Every balance change is a check-and-mutate on the locked account row plus an
immutable WalletTransaction. The unique transaction reference makes debits,
refunds and credits idempotent: replaying a reference returns the original
result instead of moving money twice.

Must be transactional: methods flush, the caller commits.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func

from backend.app.core.exceptions import (
    InsufficientBalanceError, IdempotencyConflictError, LedgerIntegrityError,
)
from backend.app.domain.actor import Actor
from backend.app.domain.pricing.pricing_engine import to_money, ZERO
from backend.app.models.ledger_enums import WalletTransactionType
from backend.app.models.wallet import WalletAccount, WalletTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerWriteResult:
    transaction: WalletTransaction
    balance_after: Decimal
    replayed: bool = False


@dataclass(frozen=True)
class ConsistencyReport:
    owner_id: int
    stored_balance: Decimal
    computed_balance: Decimal
    last_balance_after: Decimal
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.computed_balance == self.last_balance_after


class WalletLedger:

    @staticmethod
    async def get_account(db: AsyncSession, owner_id: int, lock: bool = False) -> Optional[WalletAccount]:
        query = select(WalletAccount).where(WalletAccount.owner_id == owner_id)
        if lock:
            query = query.with_for_update()
        result = await db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    async def get_or_create_account(db: AsyncSession, owner_id: int, lock: bool = False) -> WalletAccount:
        account = await WalletLedger.get_account(db, owner_id, lock=lock)
        if account is None:
            account = WalletAccount(
                owner_id=owner_id, balance=ZERO, total_credited=ZERO, total_debited=ZERO,
            )
            db.add(account)
            await db.flush()
        return account

    @staticmethod
    async def get_balance(db: AsyncSession, owner_id: int) -> Decimal:
        account = await WalletLedger.get_account(db, owner_id)
        return to_money(account.balance) if account else ZERO

    @staticmethod
    async def _find_by_reference(db: AsyncSession, reference: str) -> Optional[WalletTransaction]:
        result = await db.execute(select(WalletTransaction).where(WalletTransaction.reference == reference))
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(
        existing: WalletTransaction,
        account: WalletAccount,
        tx_type: WalletTransactionType,
        amount: Decimal,
    ) -> LedgerWriteResult:
        if (
            existing.account_id != account.id
            or existing.type != tx_type
            or to_money(existing.amount) != amount
        ):
            raise IdempotencyConflictError(existing.reference)
        logger.info("Wallet reference %s replayed", existing.reference)
        return LedgerWriteResult(existing, to_money(existing.balance_after), replayed=True)

    @staticmethod
    def _positive(amount) -> Decimal:
        amount = to_money(amount)
        if amount <= 0:
            raise LedgerIntegrityError("Amount must be positive", details={"amount": str(amount)})
        return amount

    @staticmethod
    async def check_and_deduct(
        db: AsyncSession,
        owner_id: int,
        amount: Decimal,
        reference: str,
        actor: Actor,
        shipment_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> LedgerWriteResult:
        """
        Atomically verify the balance covers amount and debit it.

        Raises:
            InsufficientBalanceError: balance < amount; nothing is written.
            IdempotencyConflictError: reference already used for another write.
        """
        amount = WalletLedger._positive(amount)
        account = await WalletLedger.get_or_create_account(db, owner_id, lock=True)

        existing = await WalletLedger._find_by_reference(db, reference)
        if existing is not None:
            return WalletLedger._replay(existing, account, WalletTransactionType.DEBIT, amount)

        current = to_money(account.balance)
        if current < amount:
            logger.warning(
                "Insufficient balance for owner=%s: current=%s required=%s", owner_id, current, amount
            )
            raise InsufficientBalanceError(current=current, required=amount)

        account.balance = current - amount
        account.total_debited = to_money(account.total_debited) + amount

        tx = WalletTransaction(
            account_id=account.id,
            type=WalletTransactionType.DEBIT,
            amount=amount,
            balance_after=account.balance,
            reference=reference,
            shipment_id=shipment_id,
            description=description,
            **actor.audit_fields(),
        )
        db.add(tx)
        await db.flush()
        logger.info("Wallet debited: owner=%s amount=%s ref=%s", owner_id, amount, reference)
        return LedgerWriteResult(tx, to_money(account.balance))

    @staticmethod
    async def credit(
        db: AsyncSession,
        owner_id: int,
        amount: Decimal,
        reference: str,
        actor: Actor,
        description: Optional[str] = None,
    ) -> LedgerWriteResult:
        """Recharge or admin adjustment."""
        amount = WalletLedger._positive(amount)
        account = await WalletLedger.get_or_create_account(db, owner_id, lock=True)

        existing = await WalletLedger._find_by_reference(db, reference)
        if existing is not None:
            return WalletLedger._replay(existing, account, WalletTransactionType.CREDIT, amount)

        account.balance = to_money(account.balance) + amount
        account.total_credited = to_money(account.total_credited) + amount
        account.last_recharge_at = datetime.now(timezone.utc)

        tx = WalletTransaction(
            account_id=account.id,
            type=WalletTransactionType.CREDIT,
            amount=amount,
            balance_after=account.balance,
            reference=reference,
            description=description or "Wallet recharge",
            **actor.audit_fields(),
        )
        db.add(tx)
        await db.flush()
        logger.info("Wallet credited: owner=%s amount=%s ref=%s", owner_id, amount, reference)
        return LedgerWriteResult(tx, to_money(account.balance))

    @staticmethod
    async def refund(
        db: AsyncSession,
        owner_id: int,
        amount: Decimal,
        reference: str,
        original_reference: str,
        actor: Actor,
        shipment_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> LedgerWriteResult:
        """
        Credit back (part of) a previous debit.

        Raises:
            LedgerIntegrityError: no such debit on this account, or the refund
                would exceed what is left of it.
        """
        amount = WalletLedger._positive(amount)
        account = await WalletLedger.get_or_create_account(db, owner_id, lock=True)

        existing = await WalletLedger._find_by_reference(db, reference)
        if existing is not None:
            return WalletLedger._replay(existing, account, WalletTransactionType.CREDIT, amount)

        original = await WalletLedger._find_by_reference(db, original_reference)
        if original is None or original.type != WalletTransactionType.DEBIT or original.account_id != account.id:
            raise LedgerIntegrityError(
                "Refund must reference a debit on the same account",
                details={"original_reference": original_reference},
            )

        refunded = await db.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.related_transaction_id == original.id,
                WalletTransaction.type == WalletTransactionType.CREDIT,
            )
        )
        already = to_money(refunded.scalar_one())
        remaining = to_money(original.amount) - already
        if amount > remaining:
            raise LedgerIntegrityError(
                "Refund exceeds the unrefunded part of the original debit",
                details={"requested": str(amount), "remaining": str(remaining)},
            )

        account.balance = to_money(account.balance) + amount
        account.total_credited = to_money(account.total_credited) + amount

        tx = WalletTransaction(
            account_id=account.id,
            type=WalletTransactionType.CREDIT,
            amount=amount,
            balance_after=account.balance,
            reference=reference,
            shipment_id=shipment_id,
            related_transaction_id=original.id,
            description=description or f"REFUND: {original.description or original_reference}",
            **actor.audit_fields(),
        )
        db.add(tx)
        await db.flush()
        logger.info("Wallet refunded: owner=%s amount=%s ref=%s", owner_id, amount, reference)
        return LedgerWriteResult(tx, to_money(account.balance))

    @staticmethod
    async def list_transactions(
        db: AsyncSession, owner_id: int, limit: int = 50, offset: int = 0
    ) -> List[WalletTransaction]:
        account = await WalletLedger.get_account(db, owner_id)
        if account is None:
            return []
        result = await db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.account_id == account.id)
            .order_by(WalletTransaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def verify_consistency(db: AsyncSession, owner_id: int) -> ConsistencyReport:
        """Fold the transaction log and compare it with the stored balance."""
        account = await WalletLedger.get_account(db, owner_id)
        if account is None:
            return ConsistencyReport(owner_id, ZERO, ZERO, ZERO, 0)

        result = await db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.account_id == account.id)
            .order_by(WalletTransaction.id)
        )
        transactions = result.scalars().all()

        computed = ZERO
        for tx in transactions:
            if tx.type == WalletTransactionType.CREDIT:
                computed += to_money(tx.amount)
            else:
                computed -= to_money(tx.amount)

        last = to_money(transactions[-1].balance_after) if transactions else ZERO
        report = ConsistencyReport(
            owner_id=owner_id,
            stored_balance=to_money(account.balance),
            computed_balance=to_money(computed),
            last_balance_after=last,
            transaction_count=len(transactions),
        )
        if not report.consistent:
            logger.error("Wallet inconsistency for owner=%s: %s", owner_id, report)
        return report
