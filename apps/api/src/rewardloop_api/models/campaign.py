"""Campaign rule, enrollment and evaluation audit models."""

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
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID

from rewardloop_api.core.clock import utcnow
from rewardloop_api.db.base import Base
from rewardloop_api.models.communication import CommunicationChannel


class RuleType(str, Enum):
    """Trigger families a rule can listen to."""

    ORDER_VALUE = "order_value"
    ORDER_COUNT = "order_count"
    SIGNUP = "signup"
    BIRTHDAY = "birthday"
    REFERRAL = "referral"
    CUSTOM_EVENT = "custom_event"
    SOCIAL_FOLLOW = "social_follow"
    PROFILE_COMPLETE = "profile_complete"
    REVIEW = "review"


class CooldownBasis(str, Enum):
    """What the per-rule cooldown window is measured from."""

    LAST_ENROLLMENT = "last_enrollment"
    WINDOW_START = "window_start"


class CampaignRule(Base):
    """Earning/campaign rule evaluated against incoming events."""

    __tablename__ = "campaign_rules"
    __table_args__ = (
        Index("ix_campaign_rules_client_active", "client_id", "is_active"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    program_id = Column(UUID(as_uuid=True), ForeignKey("membership_programs.id", ondelete="SET NULL"), nullable=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="SET NULL"), nullable=True)
    template_id = Column(UUID(as_uuid=True), ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True)
    channel = Column(SqlEnum(CommunicationChannel, name="communication_channel"), nullable=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    rule_type = Column(SqlEnum(RuleType, name="campaign_rule_type"), nullable=False)
    trigger_conditions = Column(JSON, nullable=False, default=dict)
    points_reward = Column(Integer, nullable=False, default=0, server_default="0")
    points_expiry_days = Column(Integer, nullable=True)
    priority = Column(Integer, nullable=False, default=0, server_default="0")
    max_times_per_customer = Column(Integer, nullable=True)
    cooldown_days = Column(Integer, nullable=True)
    cooldown_basis = Column(
        SqlEnum(CooldownBasis, name="campaign_cooldown_basis"),
        nullable=False,
        default=CooldownBasis.LAST_ENROLLMENT,
        server_default=CooldownBasis.LAST_ENROLLMENT.name,
    )
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    max_enrollments = Column(Integer, nullable=True)
    current_enrollments = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class EnrollmentStatus(str, Enum):
    ENROLLED = "enrolled"
    CANCELLED = "cancelled"


class Enrollment(Base):
    """A member admitted to a rule's campaign by one trigger event."""

    __tablename__ = "campaign_enrollments"
    __table_args__ = (
        UniqueConstraint("member_id", "rule_id", "idempotency_key", name="uq_campaign_enrollments_idempotency"),
        Index("ix_campaign_enrollments_rule_member", "rule_id", "member_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("campaign_rules.id", ondelete="CASCADE"), nullable=False)
    program_id = Column(UUID(as_uuid=True), ForeignKey("membership_programs.id", ondelete="SET NULL"), nullable=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="SET NULL"), nullable=True)
    referrer_member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    referred_member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SqlEnum(EnrollmentStatus, name="campaign_enrollment_status"),
        nullable=False,
        default=EnrollmentStatus.ENROLLED,
        server_default=EnrollmentStatus.ENROLLED.name,
    )
    idempotency_key = Column(String, nullable=False)
    points_awarded = Column(Integer, nullable=False, default=0, server_default="0")
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class EvaluationOutcome(str, Enum):
    """Terminal state of one rule evaluated against one event."""

    AWARDED = "awarded"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class RuleEvaluation(Base):
    """Audit log row per (event, rule) evaluation."""

    __tablename__ = "rule_evaluations"
    __table_args__ = (
        Index("ix_rule_evaluations_rule_reference", "rule_id", "reference_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("campaign_rules.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    event_type = Column(String, nullable=False)
    reference_id = Column(String, nullable=False)
    outcome = Column(SqlEnum(EvaluationOutcome, name="rule_evaluation_outcome"), nullable=False)
    reason = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


__all__ = [
    "CampaignRule",
    "CooldownBasis",
    "Enrollment",
    "EnrollmentStatus",
    "EvaluationOutcome",
    "RuleEvaluation",
    "RuleType",
]
