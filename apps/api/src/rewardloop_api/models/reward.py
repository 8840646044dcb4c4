"""Reward catalogue, voucher pool and allocation models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
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


class CouponType(str, Enum):
    UNIQUE = "unique"
    GENERIC = "generic"


class Reward(Base):
    """Reward a rule can hand out."""

    __tablename__ = "rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    coupon_type = Column(SqlEnum(CouponType, name="reward_coupon_type"), nullable=False)
    generic_coupon_code = Column(String, nullable=True)
    redemption_link = Column(String, nullable=True)
    validity_days = Column(Integer, nullable=True)
    expiry_date = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class Voucher(Base):
    """Single-use code from a unique reward's pool."""

    __tablename__ = "reward_vouchers"
    __table_args__ = (
        Index("ix_reward_vouchers_available", "reward_id", "is_used", "issued_to_member_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False)
    code = Column(String, nullable=False, unique=True)
    issued_to_member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=True)
    is_used = Column(Boolean, nullable=False, default=False, server_default=false())
    used_at = Column(DateTime(timezone=True), nullable=True)
    used_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class RewardAllocationStatus(str, Enum):
    ISSUED = "issued"
    FAILED = "failed"
    REDEEMED = "redeemed"


class RewardAllocation(Base):
    """Record of a reward handed (or failed to be handed) to a member."""

    __tablename__ = "reward_allocations"
    __table_args__ = (
        UniqueConstraint("reward_id", "idempotency_key", name="uq_reward_allocations_idempotency"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("campaign_rules.id", ondelete="SET NULL"), nullable=True)
    enrollment_id = Column(UUID(as_uuid=True), ForeignKey("campaign_enrollments.id", ondelete="SET NULL"), nullable=True)
    voucher_id = Column(UUID(as_uuid=True), ForeignKey("reward_vouchers.id", ondelete="SET NULL"), nullable=True)
    code = Column(String, nullable=True)
    redemption_link = Column(String, nullable=True)
    status = Column(SqlEnum(RewardAllocationStatus, name="reward_allocation_status"), nullable=False)
    failure_reason = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)


__all__ = ["CouponType", "Reward", "RewardAllocation", "RewardAllocationStatus", "Voucher"]
