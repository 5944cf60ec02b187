"""
Brand Authorization database model.

Records which distributors and service centers belong to a brand's network.
"""

from sqlalchemy import Column, Integer, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.enums import UserRole, AuthorizationStatus


class BrandAuthorization(Base):
    __tablename__ = "brand_authorizations"
    __table_args__ = (
        UniqueConstraint("brand_id", "partner_id", name="uq_brand_partner"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    brand_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    partner_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    partner_role = Column(Enum(UserRole), nullable=False)
    status = Column(Enum(AuthorizationStatus), default=AuthorizationStatus.ACTIVE, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<BrandAuthorization(brand={self.brand_id}, partner={self.partner_id}, status='{self.status.value}')>"
