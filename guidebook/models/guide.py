"""
Guide and guide-service reference data.

Guides own their cancellation policy and their services' pricing; the
booking engine only reads these rows.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.enums import CancellationPolicyKind
from ..database import Base


class Guide(Base):
    __tablename__ = "guides"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    user_id = Column(String(26), nullable=True, index=True)
    business_name = Column(String(255), nullable=False)
    cancellation_policy = Column(
        String(32), nullable=False, default=CancellationPolicyKind.MODERATE.value
    )
    instant_booking_enabled = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    services = relationship("GuideService", back_populates="guide")

    def __repr__(self) -> str:
        return f"<Guide {self.id}: {self.business_name} policy={self.cancellation_policy}>"


class GuideService(Base):
    """A bookable trip or activity offered by a guide."""

    __tablename__ = "guide_services"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    guide_id = Column(String(26), ForeignKey("guides.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    price_per_person = Column(Numeric(10, 2), nullable=False)
    # NULL falls back to settings.default_deposit_percentage
    deposit_percentage = Column(Integer, nullable=True)
    min_participants = Column(Integer, nullable=False, default=1)
    max_participants = Column(Integer, nullable=False, default=1)
    duration_hours = Column(Numeric(5, 2), nullable=False, default=1)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    guide = relationship("Guide", back_populates="services")

    __table_args__ = (
        CheckConstraint("price_per_person >= 0", name="ck_guide_services_price_non_negative"),
        CheckConstraint(
            "deposit_percentage IS NULL OR (deposit_percentage >= 0 AND deposit_percentage <= 100)",
            name="ck_guide_services_deposit_percentage",
        ),
        CheckConstraint("min_participants >= 1", name="ck_guide_services_min_participants"),
        CheckConstraint(
            "max_participants >= min_participants", name="ck_guide_services_max_participants"
        ),
    )

    def __repr__(self) -> str:
        return f"<GuideService {self.id}: {self.title} guide={self.guide_id}>"
