"""
Inventory ledger database models.

InventoryLedgerEntry is the append-only movement log; InventoryBalance is the
projection kept consistent with it inside the same transaction.
"""

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Enum, ForeignKey,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.ledger_enums import InventoryAction, ReservationStatus
from backend.app.models.shipment_enums import ActorKind


class InventoryBalance(Base):
    """Per (brand, part) on-hand and reserved counters. available = on_hand - reserved."""
    __tablename__ = "inventory_balances"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("brand_id", "part_id", name="uq_inventory_brand_part"),
        CheckConstraint("on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_inventory_reserved_non_negative"),
        CheckConstraint("reserved <= on_hand", name="ck_inventory_available_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    brand_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False, index=True)
    on_hand = Column(Integer, default=0, nullable=False)
    reserved = Column(Integer, default=0, nullable=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def __repr__(self):
        return f"<InventoryBalance(brand={self.brand_id}, part={self.part_id}, on_hand={self.on_hand}, reserved={self.reserved})>"


class InventoryLedgerEntry(Base):
    """
    Inventory movement record.

    NO updates or deletions allowed.
    """
    __tablename__ = "inventory_ledger_entries"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_inventory_entry_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    brand_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False, index=True)
    action = Column(Enum(InventoryAction), nullable=False)
    quantity = Column(Integer, nullable=False)

    # Movement endpoints (party ids)
    source_id = Column(Integer, nullable=True)
    destination_id = Column(Integer, nullable=True)

    # Snapshot after this movement
    on_hand_after = Column(Integer, nullable=False)
    reserved_after = Column(Integer, nullable=False)

    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True, index=True)
    reservation_id = Column(Integer, ForeignKey("inventory_reservations.id"), nullable=True)

    actor_kind = Column(Enum(ActorKind), nullable=False)
    actor_id = Column(Integer, nullable=True)
    actor_name = Column(String(100), nullable=False)
    note = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<InventoryLedgerEntry(id={self.id}, action='{self.action.value}', qty={self.quantity})>"


class InventoryReservation(Base):
    """Handle for stock earmarked by a shipment. Passed to commit and release."""
    __tablename__ = "inventory_reservations"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reference = Column(String(150), unique=True, nullable=False, index=True)
    brand_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True, index=True)
    quantity = Column(Integer, nullable=False)
    status = Column(Enum(ReservationStatus), default=ReservationStatus.RESERVED, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<InventoryReservation(ref='{self.reference}', qty={self.quantity}, status='{self.status.value}')>"
