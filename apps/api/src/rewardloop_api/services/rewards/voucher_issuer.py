"""Allocation of unique and generic reward codes."""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import as_utc, utcnow
from rewardloop_api.core.settings import settings
from rewardloop_api.models.reward import (
    CouponType,
    Reward,
    RewardAllocation,
    RewardAllocationStatus,
    Voucher,
)
from rewardloop_api.observability.engine import get_engine_store
from rewardloop_api.services.errors import (
    AlreadyRedeemedError,
    DuplicateReferenceError,
    OutOfStockError,
    RewardNotFoundError,
    VoucherNotFoundError,
)

CLAIM_ATTEMPTS = 5


class VoucherIssuer:
    """Hands out reward codes; every attempt leaves an allocation row."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._observability = get_engine_store()

    async def issue(
        self,
        reward_id: UUID,
        member_id: UUID,
        idempotency_key: str,
        *,
        rule_id: UUID | None = None,
        enrollment_id: UUID | None = None,
    ) -> RewardAllocation:
        """Issue by coupon type; stock exhaustion yields a failed allocation."""

        reward = await self._get_reward(reward_id)
        try:
            if reward.coupon_type == CouponType.UNIQUE:
                return await self.issue_unique(
                    reward_id,
                    member_id,
                    idempotency_key,
                    rule_id=rule_id,
                    enrollment_id=enrollment_id,
                )
            return await self.issue_generic(
                reward_id,
                member_id,
                idempotency_key,
                rule_id=rule_id,
                enrollment_id=enrollment_id,
            )
        except OutOfStockError:
            allocation = RewardAllocation(
                client_id=reward.client_id,
                member_id=member_id,
                reward_id=reward.id,
                rule_id=rule_id,
                enrollment_id=enrollment_id,
                status=RewardAllocationStatus.FAILED,
                failure_reason="out_of_stock",
                idempotency_key=idempotency_key,
                created_at=utcnow(),
            )
            self._db.add(allocation)
            await self._db.flush()
            self._observability.record_voucher_outcome("out_of_stock")
            logger.warning(
                "Reward out of stock",
                reward_id=str(reward.id),
                member_id=str(member_id),
                idempotency_key=idempotency_key,
            )
            return allocation

    async def issue_unique(
        self,
        reward_id: UUID,
        member_id: UUID,
        idempotency_key: str,
        *,
        rule_id: UUID | None = None,
        enrollment_id: UUID | None = None,
    ) -> RewardAllocation:
        """Claim one unissued code. Raises ``OutOfStockError`` when none remain."""

        existing = await self._find_allocation(reward_id, idempotency_key)
        if existing is not None:
            return existing

        reward = await self._get_reward(reward_id)
        now = utcnow()
        voucher: Voucher | None = None
        for _ in range(CLAIM_ATTEMPTS):
            candidate = (
                await self._db.execute(
                    select(Voucher)
                    .where(
                        Voucher.reward_id == reward.id,
                        Voucher.is_used.is_(False),
                        Voucher.issued_to_member_id.is_(None),
                    )
                    .order_by(Voucher.created_at.asc(), Voucher.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
            ).scalar_one_or_none()
            if candidate is None:
                raise OutOfStockError(reward.id)

            claim = await self._db.execute(
                update(Voucher)
                .where(
                    Voucher.id == candidate.id,
                    Voucher.is_used.is_(False),
                    Voucher.issued_to_member_id.is_(None),
                )
                .values(issued_to_member_id=member_id, issued_at=now)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 1:
                voucher = candidate
                break
            logger.debug("Voucher claimed concurrently, retrying", voucher_id=str(candidate.id))

        if voucher is None:
            raise OutOfStockError(reward.id)

        allocation = await self._record_allocation(
            reward,
            member_id,
            idempotency_key,
            code=voucher.code,
            voucher_id=voucher.id,
            rule_id=rule_id,
            enrollment_id=enrollment_id,
        )
        self._observability.record_voucher_outcome("issued_unique")
        return allocation

    async def issue_generic(
        self,
        reward_id: UUID,
        member_id: UUID,
        idempotency_key: str,
        *,
        rule_id: UUID | None = None,
        enrollment_id: UUID | None = None,
    ) -> RewardAllocation:
        existing = await self._find_allocation(reward_id, idempotency_key)
        if existing is not None:
            return existing

        reward = await self._get_reward(reward_id)
        if not reward.generic_coupon_code:
            raise OutOfStockError(reward.id)
        allocation = await self._record_allocation(
            reward,
            member_id,
            idempotency_key,
            code=reward.generic_coupon_code,
            voucher_id=None,
            rule_id=rule_id,
            enrollment_id=enrollment_id,
        )
        self._observability.record_voucher_outcome("issued_generic")
        return allocation

    async def mark_redeemed(self, code: str, *, redeemed_by: str | None = None) -> Voucher:
        """Consume a unique code once."""

        now = utcnow()
        result = await self._db.execute(
            update(Voucher)
            .where(Voucher.code == code, Voucher.is_used.is_(False))
            .values(is_used=True, used_at=now, used_by=redeemed_by)
            .execution_options(synchronize_session=False)
        )
        voucher = (
            await self._db.execute(
                select(Voucher).where(Voucher.code == code).execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if voucher is None:
            raise VoucherNotFoundError(code)
        if result.rowcount == 0:
            raise AlreadyRedeemedError(code)

        await self._db.execute(
            update(RewardAllocation)
            .where(
                RewardAllocation.voucher_id == voucher.id,
                RewardAllocation.status == RewardAllocationStatus.ISSUED,
            )
            .values(status=RewardAllocationStatus.REDEEMED, redeemed_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._db.flush()
        self._observability.record_voucher_outcome("redeemed")
        logger.info("Voucher redeemed", voucher_id=str(voucher.id), reward_id=str(voucher.reward_id))
        return voucher

    async def remaining_stock(self, reward_id: UUID) -> int:
        stmt = select(func.count(Voucher.id)).where(
            Voucher.reward_id == reward_id,
            Voucher.is_used.is_(False),
            Voucher.issued_to_member_id.is_(None),
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def _get_reward(self, reward_id: UUID) -> Reward:
        reward = await self._db.get(Reward, reward_id)
        if reward is None:
            raise RewardNotFoundError(str(reward_id))
        return reward

    async def _find_allocation(self, reward_id: UUID, idempotency_key: str) -> RewardAllocation | None:
        stmt = select(RewardAllocation).where(
            RewardAllocation.reward_id == reward_id,
            RewardAllocation.idempotency_key == idempotency_key,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _record_allocation(
        self,
        reward: Reward,
        member_id: UUID,
        idempotency_key: str,
        *,
        code: str,
        voucher_id: UUID | None,
        rule_id: UUID | None,
        enrollment_id: UUID | None,
    ) -> RewardAllocation:
        now = utcnow()
        allocation = RewardAllocation(
            client_id=reward.client_id,
            member_id=member_id,
            reward_id=reward.id,
            rule_id=rule_id,
            enrollment_id=enrollment_id,
            voucher_id=voucher_id,
            code=code,
            redemption_link=build_redemption_link(reward, code),
            status=RewardAllocationStatus.ISSUED,
            idempotency_key=idempotency_key,
            valid_until=_resolve_valid_until(reward, now),
            created_at=now,
        )
        self._db.add(allocation)
        try:
            await self._db.flush()
        except IntegrityError as exc:
            raise DuplicateReferenceError(member_id, idempotency_key) from exc
        logger.info(
            "Reward allocated",
            reward_id=str(reward.id),
            member_id=str(member_id),
            coupon_type=reward.coupon_type.value,
        )
        return allocation


def build_redemption_link(reward: Reward, code: str) -> str:
    if reward.redemption_link:
        return reward.redemption_link.replace("{code}", code)
    base = settings.rewards_link_base_url.rstrip("/")
    return f"{base}/{code}"


def _resolve_valid_until(reward: Reward, issued_at: datetime) -> datetime | None:
    candidates: list[datetime] = []
    if reward.validity_days:
        candidates.append(issued_at + timedelta(days=reward.validity_days))
    expiry = as_utc(reward.expiry_date)
    if expiry is not None:
        candidates.append(expiry)
    return min(candidates) if candidates else None


__all__ = ["VoucherIssuer", "build_redemption_link"]
