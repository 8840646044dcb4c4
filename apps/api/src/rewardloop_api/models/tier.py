"""Loyalty tiers: earn rates and redemption limits by lifetime points."""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID

from rewardloop_api.core.clock import utcnow
from rewardloop_api.db.base import Base


class LoyaltyTier(Base):
    """A member sits in the highest active tier whose ``min_points`` they have earned."""

    __tablename__ = "loyalty_tiers"
    __table_args__ = (UniqueConstraint("client_id", "name", name="uq_loyalty_tiers_client_name"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    level = Column(Integer, nullable=False, default=0, server_default="0")
    min_points = Column(Integer, nullable=False, default=0, server_default="0")
    points_earn_rate = Column(Numeric(10, 4), nullable=False, default=1, server_default="1")
    points_earn_divisor = Column(Numeric(10, 4), nullable=False, default=1, server_default="1")
    max_redemption_percent = Column(Integer, nullable=True)
    max_redemption_points = Column(Integer, nullable=True)
    # Currency value of one point when redeemed.
    points_value = Column(Numeric(12, 4), nullable=False, default=Decimal("0.01"), server_default="0.01")
    benefits = Column(Text, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False, server_default=false())
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


__all__ = ["LoyaltyTier"]
