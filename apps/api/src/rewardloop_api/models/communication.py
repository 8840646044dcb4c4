"""Outbound communication models."""

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
    false,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID

from rewardloop_api.core.clock import utcnow
from rewardloop_api.db.base import Base


class CommunicationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    WHATSAPP = "whatsapp"


class CommunicationStatus(str, Enum):
    """Lifecycle of a communication record."""

    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CLICKED = "clicked"


# Provider callbacks may only move a record forward along this order.
STATUS_RANK = {
    CommunicationStatus.PENDING: 0,
    CommunicationStatus.FAILED: 0,
    CommunicationStatus.SENT: 1,
    CommunicationStatus.DELIVERED: 2,
    CommunicationStatus.CLICKED: 3,
}

SETTLED_STATUSES = (
    CommunicationStatus.SENT,
    CommunicationStatus.DELIVERED,
    CommunicationStatus.CLICKED,
)


class MessageTemplate(Base):
    """Tenant-authored message template with ``{placeholder}`` tokens."""

    __tablename__ = "message_templates"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    channel = Column(SqlEnum(CommunicationChannel, name="communication_channel"), nullable=False)
    subject = Column(String, nullable=True)
    body = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


class CommunicationRecord(Base):
    """One message to one recipient, tracked through delivery."""

    __tablename__ = "communication_records"
    __table_args__ = (
        UniqueConstraint("client_id", "dedupe_key", name="uq_communication_records_dedupe"),
        Index("ix_communication_records_dispatch", "status", "next_attempt_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    rule_id = Column(UUID(as_uuid=True), ForeignKey("campaign_rules.id", ondelete="SET NULL"), nullable=True)
    enrollment_id = Column(UUID(as_uuid=True), ForeignKey("campaign_enrollments.id", ondelete="SET NULL"), nullable=True)
    allocation_id = Column(UUID(as_uuid=True), ForeignKey("reward_allocations.id", ondelete="SET NULL"), nullable=True)
    template_id = Column(UUID(as_uuid=True), ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True)
    dedupe_key = Column(String, nullable=True)
    channel = Column(SqlEnum(CommunicationChannel, name="communication_channel"), nullable=False)
    recipient = Column(String, nullable=False)
    template_subject = Column(String, nullable=True)
    template_body = Column(Text, nullable=False)
    variables = Column(JSON, nullable=False, default=dict)
    subject = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    personalized_url = Column(String, nullable=True)
    fallback_render = Column(Boolean, nullable=False, default=False, server_default=false())
    status = Column(
        SqlEnum(CommunicationStatus, name="communication_status"),
        nullable=False,
        default=CommunicationStatus.PENDING,
        server_default=CommunicationStatus.PENDING.name,
    )
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=5, server_default="5")
    next_attempt_at = Column(DateTime(timezone=True), nullable=True)
    claimed_until = Column(DateTime(timezone=True), nullable=True)
    claim_token = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    provider_message_id = Column(String, nullable=True, index=True)
    provider_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)


__all__ = [
    "CommunicationChannel",
    "CommunicationRecord",
    "CommunicationStatus",
    "MessageTemplate",
    "SETTLED_STATUSES",
    "STATUS_RANK",
]
