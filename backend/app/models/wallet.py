"""
Wallet ledger database models.

WalletTransaction is the immutable log; WalletAccount.balance is its running
projection and is only touched by WalletLedger.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Enum, Numeric, ForeignKey, CheckConstraint,
)
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import WalletTransactionType
from backend.app.models.shipment_enums import ActorKind


class WalletAccount(Base):
    __tablename__ = "wallet_accounts"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallet_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False, index=True)

    balance = Column(Numeric(12, 2), default=0, nullable=False)
    total_credited = Column(Numeric(12, 2), default=0, nullable=False)
    total_debited = Column(Numeric(12, 2), default=0, nullable=False)
    last_recharge_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<WalletAccount(owner={self.owner_id}, balance={self.balance})>"


class WalletTransaction(Base):
    """
    Wallet Transaction model.

    Immutable record of a balance movement. reference is unique and makes
    every write idempotent. Refund credits point at their original debit via
    related_transaction_id.
    NO updates or deletions allowed.
    """
    __tablename__ = "wallet_transactions"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_wallet_tx_amount_positive"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("wallet_accounts.id"), nullable=False, index=True)

    type = Column(Enum(WalletTransactionType), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    balance_after = Column(Numeric(12, 2), nullable=False)

    reference = Column(String(150), unique=True, nullable=False, index=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True, index=True)
    related_transaction_id = Column(Integer, ForeignKey("wallet_transactions.id"), nullable=True)

    actor_kind = Column(Enum(ActorKind), nullable=False)
    actor_id = Column(Integer, nullable=True)
    actor_name = Column(String(100), nullable=False)
    description = Column(String(255), nullable=True)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<WalletTransaction(id={self.id}, type='{self.type.value}', amount={self.amount})>"
