"""
Shipment database models.

Shipment -> Box -> BoxPart graph plus the append-only status event trail.
Rows are owned by the ShipmentOrchestrator; status only changes through its
transition operations.
"""

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Enum, Numeric, ForeignKey,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import UserRole
from backend.app.models.insurance import InsuranceType
from backend.app.models.shipment_enums import (
    ShipmentType, ShipmentDirection, ReturnReason, ShipmentPriority,
    ShipmentStatus, BoxStatus, ActorKind,
)


class Shipment(Base):
    """
    Shipment model.

    Cost components are a frozen snapshot of the breakdown the wallet was
    debited for. charged_amount is the only figure refunds are derived from.
    """
    __tablename__ = "shipments"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Parties
    brand_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    initiator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    initiator_role = Column(Enum(UserRole), nullable=False)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    recipient_role = Column(Enum(UserRole), nullable=False)

    # Classification snapshot
    shipment_type = Column(Enum(ShipmentType), nullable=False)
    direction = Column(Enum(ShipmentDirection), nullable=False)
    return_reason = Column(Enum(ReturnReason), nullable=True)
    courier_payer = Column(Enum(UserRole), nullable=False)
    payer_account_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    priority = Column(Enum(ShipmentPriority), default=ShipmentPriority.MEDIUM, nullable=False)
    status = Column(Enum(ShipmentStatus), default=ShipmentStatus.INITIATED, nullable=False, index=True)

    # Physical
    total_weight = Column(Numeric(10, 3), nullable=False)
    total_value = Column(Numeric(12, 2), nullable=False)
    declared_value = Column(Numeric(12, 2), nullable=False)
    is_remote_area = Column(Boolean, default=False, nullable=False)
    insurance = Column(InsuranceType, nullable=False)

    # Cost breakdown snapshot
    base_cost = Column(Numeric(12, 2), nullable=False, default=0)
    weight_charge = Column(Numeric(12, 2), nullable=False, default=0)
    express_charge = Column(Numeric(12, 2), nullable=False, default=0)
    remote_surcharge = Column(Numeric(12, 2), nullable=False, default=0)
    markup = Column(Numeric(12, 2), nullable=False, default=0)
    insurance_premium = Column(Numeric(12, 2), nullable=False, default=0)
    insurance_gst = Column(Numeric(12, 2), nullable=False, default=0)
    estimated_cost = Column(Numeric(12, 2), nullable=False)
    charged_amount = Column(Numeric(12, 2), nullable=False)
    actual_courier_cost = Column(Numeric(12, 2), nullable=True)
    rate_card_id = Column(Integer, ForeignKey("rate_cards.id"), nullable=True)
    pricing_source = Column(String(50), nullable=False)
    wallet_debit_reference = Column(String(150), nullable=True, index=True)

    # Courier
    tracking_id = Column(String(100), unique=True, nullable=True, index=True)
    tracking_url = Column(String(500), nullable=True)
    courier_reference = Column(String(100), unique=True, nullable=True)
    courier_attempts = Column(Integer, default=0, nullable=False)
    last_courier_error = Column(Text, nullable=True)

    # Idempotency & grouping
    idempotency_key = Column(String(150), nullable=False, index=True)
    bulk_reference = Column(String(150), nullable=True, index=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    boxes = relationship(
        "Box", back_populates="shipment", lazy="selectin",
        cascade="all, delete-orphan", order_by="Box.sequence",
    )

    # Client keys are unique per initiating party, not globally
    __table_args__ = (
        UniqueConstraint("initiator_id", "idempotency_key", name="uq_shipment_initiator_idempotency_key"),
    )

    def __repr__(self):
        return f"<Shipment(id={self.id}, type='{self.shipment_type.value}', status='{self.status.value}')>"


class Box(Base):
    """A physical box inside a shipment. Immutable except status and tracking id."""
    __tablename__ = "boxes"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("shipment_id", "sequence", name="uq_box_shipment_sequence"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    weight_kg = Column(Numeric(10, 3), nullable=False)
    value = Column(Numeric(12, 2), nullable=False)
    length_cm = Column(Numeric(8, 2), nullable=True)
    width_cm = Column(Numeric(8, 2), nullable=True)
    height_cm = Column(Numeric(8, 2), nullable=True)

    tracking_id = Column(String(100), nullable=True)
    status = Column(Enum(BoxStatus), default=BoxStatus.PENDING, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    shipment = relationship("Shipment", back_populates="boxes")
    parts = relationship("BoxPart", back_populates="box", lazy="selectin", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Box(id={self.id}, shipment={self.shipment_id}, seq={self.sequence})>"


class BoxPart(Base):
    __tablename__ = "box_parts"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_box_part_quantity_positive"),
        UniqueConstraint("box_id", "part_id", name="uq_box_part"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    box_id = Column(Integer, ForeignKey("boxes.id"), nullable=False, index=True)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)

    box = relationship("Box", back_populates="parts")

    def __repr__(self):
        return f"<BoxPart(box={self.box_id}, part={self.part_id}, qty={self.quantity})>"


class ShipmentStatusEvent(Base):
    """
    Append-only status trail.

    Every transition, including the creation steps, leaves one row.
    NO updates or deletions allowed.
    """
    __tablename__ = "shipment_status_events"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    from_status = Column(Enum(ShipmentStatus), nullable=True)
    to_status = Column(Enum(ShipmentStatus), nullable=False)

    actor_kind = Column(Enum(ActorKind), nullable=False)
    actor_id = Column(Integer, nullable=True)
    actor_name = Column(String(100), nullable=False)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<ShipmentStatusEvent(shipment={self.shipment_id}, {self.from_status} -> {self.to_status})>"
