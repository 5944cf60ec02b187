"""
Courier Rate Card database model.

Defines pricing configuration for shipment cost calculation.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, Boolean, Enum, ForeignKey
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import UserRole
from backend.app.models.shipment_enums import ShipmentType


class RateCard(Base):
    """
    Rate Card model.

    Keyed by (shipment type, payer role, brand). payer_role NULL matches any
    payer; brand_id NULL marks the global card a brand override falls back to.
    """
    __tablename__ = "rate_cards"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    shipment_type = Column(Enum(ShipmentType), nullable=False, index=True)
    payer_role = Column(Enum(UserRole), nullable=True)
    brand_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Rates
    base_rate_per_box = Column(Numeric(10, 2), nullable=False)
    weight_rate_per_kg = Column(Numeric(10, 2), nullable=False)
    free_weight_per_box = Column(Numeric(10, 3), default=0, nullable=False)
    express_multiplier = Column(Numeric(6, 3), default=1, nullable=False)
    remote_surcharge_per_box = Column(Numeric(10, 2), default=0, nullable=False)
    markup_percent = Column(Numeric(6, 2), default=0, nullable=False)
    min_charge = Column(Numeric(10, 2), default=0, nullable=False)

    # Insurance
    insurance_threshold = Column(Numeric(12, 2), nullable=False)
    insurance_premium_rate = Column(Numeric(6, 4), nullable=False)
    insurance_gst_rate = Column(Numeric(6, 4), nullable=False)

    # Validity
    effective_from = Column(DateTime(timezone=True), nullable=False)
    effective_until = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Audit
    created_by_admin_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<RateCard(id={self.id}, name='{self.name}', type='{self.shipment_type.value}')>"
