"""
Part database model.

Spare part catalogue entry owned by a brand.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base


class Part(Base):
    __tablename__ = "parts"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("brand_id", "code", name="uq_part_brand_code"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    brand_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    code = Column(String(50), nullable=False)
    name = Column(String(200), nullable=False)
    weight_kg = Column(Numeric(10, 3), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Part(id={self.id}, code='{self.code}', brand={self.brand_id})>"
