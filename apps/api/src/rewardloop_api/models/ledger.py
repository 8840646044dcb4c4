"""Points ledger models: immutable transactions and expiry lots."""

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
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from rewardloop_api.core.clock import utcnow
from rewardloop_api.db.base import Base


class LedgerTransactionType(str, Enum):
    """Kinds of ledger postings."""

    EARN = "earn"
    REDEEM = "redeem"
    EXPIRE = "expire"
    ADJUST = "adjust"


class LedgerTransaction(Base):
    """Append-only points posting; the sum of amounts is the balance."""

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("member_id", "reference_id", name="uq_ledger_transactions_member_reference"),
        UniqueConstraint("member_id", "sequence", name="uq_ledger_transactions_member_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    transaction_type = Column(SqlEnum(LedgerTransactionType, name="ledger_transaction_type"), nullable=False)
    points_amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    reference_id = Column(String, nullable=False)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    consumptions = relationship("LotConsumption", back_populates="transaction")


class ExpiryLot(Base):
    """Earned points that lapse at ``expires_at`` unless consumed first."""

    __tablename__ = "ledger_expiry_lots"
    __table_args__ = (
        Index("ix_ledger_expiry_lots_due", "expired", "expires_at"),
        Index("ix_ledger_expiry_lots_member_fifo", "member_id", "expires_at", "earned_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    source_transaction_id = Column(
        UUID(as_uuid=True),
        ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    earned_sequence = Column(Integer, nullable=False)
    points_amount = Column(Integer, nullable=False)
    consumed_points = Column(Integer, nullable=False, default=0, server_default="0")
    expires_at = Column(DateTime(timezone=True), nullable=False)
    expired = Column(Boolean, nullable=False, default=False, server_default=false())
    expired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    @property
    def remaining_points(self) -> int:
        return max((self.points_amount or 0) - (self.consumed_points or 0), 0)


class LotConsumption(Base):
    """Audit row linking a debit posting to the lot it drew from."""

    __tablename__ = "ledger_lot_consumptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    transaction_id = Column(
        UUID(as_uuid=True),
        ForeignKey("ledger_transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lot_id = Column(UUID(as_uuid=True), ForeignKey("ledger_expiry_lots.id", ondelete="CASCADE"), nullable=False, index=True)
    points = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    transaction = relationship("LedgerTransaction", back_populates="consumptions")


__all__ = ["ExpiryLot", "LedgerTransaction", "LedgerTransactionType", "LotConsumption"]
