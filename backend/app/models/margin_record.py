"""
Margin Record database model.

Profit bookkeeping per shipment. Derived and append-only; never read back
by the fulfillment flow.
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey
from sqlalchemy.sql import func
from backend.app.db.session import Base


class MarginRecord(Base):
    __tablename__ = "margin_records"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=False, index=True)
    box_id = Column(Integer, ForeignKey("boxes.id"), nullable=True)

    customer_price = Column(Numeric(12, 2), nullable=False)
    courier_cost = Column(Numeric(12, 2), nullable=False)
    margin = Column(Numeric(12, 2), nullable=False)
    margin_percent = Column(Numeric(7, 2), nullable=False)
    tracking_id = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<MarginRecord(shipment={self.shipment_id}, margin={self.margin})>"
