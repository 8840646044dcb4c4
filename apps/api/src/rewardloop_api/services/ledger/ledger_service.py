"""Points ledger: append-only postings with FIFO expiry lots."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import utcnow
from rewardloop_api.models.ledger import (
    ExpiryLot,
    LedgerTransaction,
    LedgerTransactionType,
    LotConsumption,
)
from rewardloop_api.models.tenant import Member
from rewardloop_api.observability.engine import get_engine_store
from rewardloop_api.services.errors import (
    DuplicateReferenceError,
    EventValidationError,
    InsufficientBalanceError,
    MemberNotFoundError,
)


@dataclass
class LedgerReconciliation:
    """Stored balance compared with a replay of every posting."""

    member_id: UUID
    stored_balance: int
    replayed_balance: int
    outstanding_lot_points: int
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return (
            self.stored_balance == self.replayed_balance
            and 0 <= self.outstanding_lot_points <= self.stored_balance
        )


@dataclass
class LedgerPage:
    transactions: list[LedgerTransaction]
    next_cursor: int | None


class PointsLedgerService:
    """Posts earn, redeem, expire and adjust transactions for one session.

    Every mutation locks the member row first, so postings for a member are
    totally ordered by ``sequence``. The caller owns the transaction and
    commits; the service only flushes.
    """

    def __init__(self, db_session: AsyncSession, *, default_expiry_days: int | None = None) -> None:
        self._db = db_session
        self._default_expiry_days = default_expiry_days
        self._observability = get_engine_store()

    async def earn(
        self,
        member_id: UUID,
        amount: int,
        reference_id: str,
        *,
        expiry_days: int | None = None,
        expires_at: datetime | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerTransaction:
        """Credit points; a reused reference returns the original posting."""

        if amount <= 0:
            raise EventValidationError("Earn amount must be positive")
        _require_reference(reference_id)

        member = await self._lock_member(member_id)
        try:
            await self._ensure_new_reference(member.id, reference_id)
        except DuplicateReferenceError:
            return await self._get_by_reference(member.id, reference_id)

        transaction = await self._post(
            member,
            transaction_type=LedgerTransactionType.EARN,
            amount=amount,
            reference_id=reference_id,
            description=description or "Points earned",
            metadata=metadata,
        )
        member.lifetime_points_earned = (member.lifetime_points_earned or 0) + amount

        lot_expiry = expires_at
        days = expiry_days if expiry_days is not None else self._default_expiry_days
        if lot_expiry is None and days is not None and days > 0:
            lot_expiry = transaction.created_at + timedelta(days=days)
        if lot_expiry is not None:
            self._db.add(
                ExpiryLot(
                    client_id=member.client_id,
                    member_id=member.id,
                    source_transaction_id=transaction.id,
                    earned_sequence=transaction.sequence,
                    points_amount=amount,
                    consumed_points=0,
                    expires_at=lot_expiry,
                )
            )
            logger.debug(
                "Scheduled points expiry lot",
                member_id=str(member.id),
                points=amount,
                expires_at=lot_expiry.isoformat(),
            )

        await self._flush(member.id, reference_id)
        return transaction

    async def redeem(
        self,
        member_id: UUID,
        amount: int,
        reference_id: str,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerTransaction:
        """Debit points, draining the soonest-expiring lots first."""

        if amount <= 0:
            raise EventValidationError("Redeem amount must be positive")
        _require_reference(reference_id)

        member = await self._lock_member(member_id)
        try:
            await self._ensure_new_reference(member.id, reference_id)
        except DuplicateReferenceError:
            return await self._get_by_reference(member.id, reference_id)

        now = utcnow()
        await self._lapse_overdue_lots(member, now)
        balance = member.points_balance or 0
        if balance < amount:
            raise InsufficientBalanceError(member.id, balance, amount)

        transaction = await self._post(
            member,
            transaction_type=LedgerTransactionType.REDEEM,
            amount=-amount,
            reference_id=reference_id,
            description=description or "Points redeemed",
            metadata=metadata,
        )
        member.lifetime_points_redeemed = (member.lifetime_points_redeemed or 0) + amount
        await self._consume_lots(member, amount, transaction, now)
        await self._flush(member.id, reference_id)
        return transaction

    async def adjust(
        self,
        member_id: UUID,
        amount: int,
        reference_id: str,
        *,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerTransaction:
        """Operator correction; negative amounts never overdraw the balance."""

        if amount == 0:
            raise EventValidationError("Adjustment amount must be non-zero")
        if not reason:
            raise EventValidationError("Adjustments require a reason")
        _require_reference(reference_id)

        member = await self._lock_member(member_id)
        try:
            await self._ensure_new_reference(member.id, reference_id)
        except DuplicateReferenceError:
            return await self._get_by_reference(member.id, reference_id)

        now = utcnow()
        if amount < 0:
            await self._lapse_overdue_lots(member, now)
        balance = member.points_balance or 0
        if amount < 0 and balance + amount < 0:
            raise InsufficientBalanceError(member.id, balance, -amount)

        transaction = await self._post(
            member,
            transaction_type=LedgerTransactionType.ADJUST,
            amount=amount,
            reference_id=reference_id,
            description=reason,
            metadata=metadata,
        )
        if amount > 0:
            member.lifetime_points_earned = (member.lifetime_points_earned or 0) + amount
        else:
            member.lifetime_points_redeemed = (member.lifetime_points_redeemed or 0) - amount
            await self._consume_lots(member, -amount, transaction, now)
        await self._flush(member.id, reference_id)
        return transaction

    async def expire(self, member_id: UUID, lot_id: UUID) -> LedgerTransaction | None:
        """Lapse whatever is left of a lot. Already-expired lots are a no-op."""

        member = await self._lock_member(member_id)
        now = utcnow()
        claim = await self._db.execute(
            update(ExpiryLot)
            .where(
                ExpiryLot.id == lot_id,
                ExpiryLot.member_id == member.id,
                ExpiryLot.expired.is_(False),
            )
            .values(expired=True, expired_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount == 0:
            logger.debug("Expiry lot already settled", lot_id=str(lot_id), member_id=str(member.id))
            return None

        lot = (
            await self._db.execute(
                select(ExpiryLot).where(ExpiryLot.id == lot_id).execution_options(populate_existing=True)
            )
        ).scalar_one()

        expire_amount = min(lot.remaining_points, member.points_balance or 0)
        if lot.remaining_points > expire_amount:
            logger.warning(
                "Expiry lot exceeded balance",
                lot_id=str(lot.id),
                member_id=str(member.id),
                remaining=lot.remaining_points,
                balance=member.points_balance,
            )
        if expire_amount <= 0:
            await self._db.flush()
            return None

        reference_id = f"expire:{lot.id}"
        transaction = await self._post(
            member,
            transaction_type=LedgerTransactionType.EXPIRE,
            amount=-expire_amount,
            reference_id=reference_id,
            description="Points expired",
            metadata={"lot_id": str(lot.id), "expires_at": lot.expires_at.isoformat()},
        )
        lot.consumed_points = (lot.consumed_points or 0) + expire_amount
        self._db.add(LotConsumption(transaction_id=transaction.id, lot_id=lot.id, points=expire_amount))
        await self._flush(member.id, reference_id)
        return transaction

    async def balance_of(self, member_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(LedgerTransaction.points_amount), 0)).where(
            LedgerTransaction.member_id == member_id
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def reconcile(self, member_id: UUID) -> LedgerReconciliation:
        member = await self._db.get(Member, member_id, populate_existing=True)
        if member is None:
            raise MemberNotFoundError(str(member_id))

        amounts = (
            await self._db.execute(
                select(LedgerTransaction.points_amount)
                .where(LedgerTransaction.member_id == member_id)
                .order_by(LedgerTransaction.sequence.asc())
            )
        ).scalars().all()
        replayed = 0
        for amount in amounts:
            replayed += amount

        outstanding = (
            await self._db.execute(
                select(
                    func.coalesce(func.sum(ExpiryLot.points_amount - ExpiryLot.consumed_points), 0)
                ).where(ExpiryLot.member_id == member_id, ExpiryLot.expired.is_(False))
            )
        ).scalar_one()

        return LedgerReconciliation(
            member_id=member_id,
            stored_balance=member.points_balance or 0,
            replayed_balance=replayed,
            outstanding_lot_points=int(outstanding),
            transaction_count=len(amounts),
        )

    async def history(
        self,
        member_id: UUID,
        *,
        limit: int = 50,
        before_sequence: int | None = None,
        transaction_types: Sequence[LedgerTransactionType] | None = None,
    ) -> LedgerPage:
        """Return postings newest first, paginated by sequence number."""

        stmt = (
            select(LedgerTransaction)
            .where(LedgerTransaction.member_id == member_id)
            .order_by(LedgerTransaction.sequence.desc())
            .limit(limit + 1)
        )
        if before_sequence is not None:
            stmt = stmt.where(LedgerTransaction.sequence < before_sequence)
        if transaction_types:
            stmt = stmt.where(LedgerTransaction.transaction_type.in_(list(transaction_types)))
        rows = list((await self._db.execute(stmt)).scalars().all())
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = rows[-1].sequence
        return LedgerPage(transactions=rows, next_cursor=next_cursor)

    async def list_due_lots(self, *, reference_time: datetime | None = None, limit: int = 200) -> list[tuple[UUID, UUID]]:
        """Return ``(member_id, lot_id)`` pairs whose expiry has passed."""

        horizon = reference_time or utcnow()
        stmt = (
            select(ExpiryLot.member_id, ExpiryLot.id)
            .where(ExpiryLot.expired.is_(False), ExpiryLot.expires_at <= horizon)
            .order_by(ExpiryLot.expires_at.asc(), ExpiryLot.earned_sequence.asc())
            .limit(limit)
        )
        return [(row.member_id, row.id) for row in (await self._db.execute(stmt)).all()]

    async def _lock_member(self, member_id: UUID) -> Member:
        stmt = (
            select(Member)
            .where(Member.id == member_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        member = (await self._db.execute(stmt)).scalar_one_or_none()
        if member is None:
            raise MemberNotFoundError(str(member_id))
        return member

    async def _ensure_new_reference(self, member_id: UUID, reference_id: str) -> None:
        stmt = select(LedgerTransaction.id).where(
            LedgerTransaction.member_id == member_id,
            LedgerTransaction.reference_id == reference_id,
        )
        if (await self._db.execute(stmt)).scalar_one_or_none() is not None:
            logger.info("Ledger reference already posted", member_id=str(member_id), reference_id=reference_id)
            raise DuplicateReferenceError(member_id, reference_id)

    async def _get_by_reference(self, member_id: UUID, reference_id: str) -> LedgerTransaction:
        stmt = select(LedgerTransaction).where(
            LedgerTransaction.member_id == member_id,
            LedgerTransaction.reference_id == reference_id,
        )
        return (await self._db.execute(stmt)).scalar_one()

    async def _post(
        self,
        member: Member,
        *,
        transaction_type: LedgerTransactionType,
        amount: int,
        reference_id: str,
        description: str | None,
        metadata: dict[str, Any] | None,
    ) -> LedgerTransaction:
        balance_before = member.points_balance or 0
        new_balance = balance_before + amount
        if new_balance < 0:
            raise InsufficientBalanceError(member.id, balance_before, -amount)

        sequence = (member.ledger_sequence or 0) + 1
        transaction = LedgerTransaction(
            client_id=member.client_id,
            member_id=member.id,
            sequence=sequence,
            transaction_type=transaction_type,
            points_amount=amount,
            balance_after=new_balance,
            reference_id=reference_id,
            description=description,
            metadata_json=metadata or {},
            created_at=utcnow(),
        )
        self._db.add(transaction)
        member.ledger_sequence = sequence
        member.points_balance = new_balance
        await self._flush(member.id, reference_id)

        self._observability.record_ledger_posting(transaction_type.value, amount)
        logger.info(
            "Recorded ledger transaction",
            member_id=str(member.id),
            transaction_type=transaction_type.value,
            amount=amount,
            balance_after=new_balance,
            reference_id=reference_id,
        )
        return transaction

    async def _lapse_overdue_lots(self, member: Member, now: datetime) -> None:
        """Expire lots the sweep has not reached yet so debits never draw on them."""

        overdue = (
            await self._db.execute(
                select(ExpiryLot.id)
                .where(
                    ExpiryLot.member_id == member.id,
                    ExpiryLot.expired.is_(False),
                    ExpiryLot.expires_at <= now,
                )
                .order_by(ExpiryLot.expires_at.asc(), ExpiryLot.earned_sequence.asc())
            )
        ).scalars().all()
        for lot_id in overdue:
            await self.expire(member.id, lot_id)

    async def _consume_lots(self, member: Member, amount: int, transaction: LedgerTransaction, now: datetime) -> None:
        remaining = amount
        stmt = (
            select(ExpiryLot)
            .where(
                ExpiryLot.member_id == member.id,
                ExpiryLot.expired.is_(False),
                ExpiryLot.expires_at > now,
                ExpiryLot.consumed_points < ExpiryLot.points_amount,
            )
            .order_by(ExpiryLot.expires_at.asc(), ExpiryLot.earned_sequence.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        for lot in (await self._db.execute(stmt)).scalars().all():
            available = lot.remaining_points
            if available <= 0:
                continue
            consume = min(available, remaining)
            lot.consumed_points = (lot.consumed_points or 0) + consume
            self._db.add(LotConsumption(transaction_id=transaction.id, lot_id=lot.id, points=consume))
            remaining -= consume
            if remaining <= 0:
                break

    async def _flush(self, member_id: UUID, reference_id: str) -> None:
        try:
            await self._db.flush()
        except IntegrityError as exc:
            # The unique (member, reference) and (member, sequence) keys back the row lock.
            raise DuplicateReferenceError(member_id, reference_id) from exc


def _require_reference(reference_id: str) -> None:
    if not reference_id or not reference_id.strip():
        raise EventValidationError("reference_id is required")


__all__ = ["LedgerPage", "LedgerReconciliation", "PointsLedgerService"]
