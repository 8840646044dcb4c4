"""Tenant, member and program models."""

from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewardloop_api.core.clock import utcnow
from rewardloop_api.db.base import Base


class Client(Base):
    """Tenant owning members, rules, rewards and templates."""

    __tablename__ = "clients"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    support_contact = Column(String, nullable=True)
    communication_settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    members = relationship("Member", back_populates="client")

    def channel_enabled(self, channel: str) -> bool:
        """Channels are on unless the tenant switched them off explicitly."""

        settings_payload: dict[str, Any] = self.communication_settings or {}
        flag = settings_payload.get(f"{channel}_enabled")
        if flag is None:
            return True
        return bool(flag)


class Member(Base):
    """Tenant-scoped loyalty identity holding the materialised balance."""

    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("client_id", "external_id", name="uq_members_client_external_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String, nullable=False)
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=True)
    full_name = Column(String, nullable=True)
    birth_date = Column(Date, nullable=True)
    referral_code = Column(String, nullable=True, unique=True)
    points_balance = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_points_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    ledger_sequence = Column(Integer, nullable=False, default=0, server_default="0")
    attributes = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    client = relationship("Client", back_populates="members")

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        if self.email:
            return self.email.split("@", 1)[0]
        return "there"


class MembershipProgram(Base):
    """Program a campaign enrolls members into."""

    __tablename__ = "membership_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)


__all__ = ["Client", "Member", "MembershipProgram"]
