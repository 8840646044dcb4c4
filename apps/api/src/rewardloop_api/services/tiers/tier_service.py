"""Tier placement, order-based earning and redemption quotes."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Any, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.models.ledger import LedgerTransaction
from rewardloop_api.models.tenant import Member
from rewardloop_api.models.tier import LoyaltyTier
from rewardloop_api.services.errors import EventValidationError, MemberNotFoundError
from rewardloop_api.services.ledger import PointsLedgerService

_CENT = Decimal("0.01")


@dataclass
class TierStatus:
    member_id: UUID
    points_balance: int
    lifetime_points_earned: int
    tier: LoyaltyTier | None
    next_tier: LoyaltyTier | None

    @property
    def points_to_next_tier(self) -> int:
        if self.next_tier is None:
            return 0
        return max(self.next_tier.min_points - self.lifetime_points_earned, 0)


@dataclass
class OrderPointsQuote:
    order_amount: Decimal
    points: int
    tier_name: str | None
    earn_rate: Decimal
    earn_divisor: Decimal


@dataclass
class OrderEarning:
    quote: OrderPointsQuote
    transaction: LedgerTransaction | None
    points_added: bool


@dataclass
class RedemptionQuote:
    can_redeem: bool
    points_balance: int
    max_points: int = 0
    points_to_redeem: int = 0
    discount_value: Decimal = Decimal("0.00")
    points_value: Decimal = Decimal("0")
    reason: str | None = None


def order_points(amount: Decimal, tier: LoyaltyTier | None) -> OrderPointsQuote:
    """``floor(amount * rate / divisor)``; without a tier nothing is earned."""

    if amount < 0:
        raise EventValidationError("Order amount must not be negative")
    if tier is None:
        return OrderPointsQuote(amount, 0, None, Decimal(1), Decimal(1))

    rate = Decimal(tier.points_earn_rate if tier.points_earn_rate is not None else 1)
    divisor = Decimal(tier.points_earn_divisor or 1)
    if divisor <= 0:
        divisor = Decimal(1)
    points = int((amount * rate / divisor).to_integral_value(rounding=ROUND_FLOOR))
    return OrderPointsQuote(amount, max(points, 0), tier.name, rate, divisor)


def redemption_limits(
    balance: int,
    order_amount: Decimal,
    tier: LoyaltyTier | None,
    requested_points: int | None = None,
) -> RedemptionQuote:
    """Apply the tier's percent and point caps to the member's balance."""

    if order_amount < 0:
        raise EventValidationError("Order amount must not be negative")
    if requested_points is not None and requested_points <= 0:
        raise EventValidationError("Requested points must be positive")
    if tier is None:
        return RedemptionQuote(can_redeem=False, points_balance=balance, reason="no_tier")

    point_value = Decimal(tier.points_value or 0)
    if point_value <= 0:
        return RedemptionQuote(can_redeem=False, points_balance=balance, reason="redemption_disabled")

    max_points = balance
    if tier.max_redemption_percent:
        by_percent = order_amount * Decimal(tier.max_redemption_percent) / Decimal(100) / point_value
        max_points = min(max_points, int(by_percent.to_integral_value(rounding=ROUND_FLOOR)))
    if tier.max_redemption_points:
        max_points = min(max_points, tier.max_redemption_points)
    max_points = max(max_points, 0)

    points_to_redeem = min(requested_points, max_points) if requested_points else max_points
    return RedemptionQuote(
        can_redeem=max_points > 0,
        points_balance=balance,
        max_points=max_points,
        points_to_redeem=points_to_redeem,
        discount_value=(points_to_redeem * point_value).quantize(_CENT, rounding=ROUND_HALF_UP),
        points_value=point_value,
        reason=None if max_points > 0 else "nothing_redeemable",
    )


class TierService:
    """Resolves tiers from lifetime points and prices points against orders."""

    def __init__(self, db_session: AsyncSession, *, default_expiry_days: int | None = None) -> None:
        self._db = db_session
        self._default_expiry_days = default_expiry_days

    async def tiers_for(self, client_id: UUID) -> Sequence[LoyaltyTier]:
        stmt = (
            select(LoyaltyTier)
            .where(LoyaltyTier.client_id == client_id, LoyaltyTier.is_active.is_(True))
            .order_by(LoyaltyTier.min_points.asc(), LoyaltyTier.level.asc())
        )
        return (await self._db.execute(stmt)).scalars().all()

    async def status(self, member: Member) -> TierStatus:
        """Highest tier reached by lifetime points, falling back to the default tier."""

        tiers = await self.tiers_for(member.client_id)
        lifetime = member.lifetime_points_earned or 0

        reached = [tier for tier in tiers if tier.min_points <= lifetime]
        current = reached[-1] if reached else next((tier for tier in tiers if tier.is_default), None)
        upcoming = next((tier for tier in tiers if tier.min_points > lifetime and tier is not current), None)

        return TierStatus(
            member_id=member.id,
            points_balance=member.points_balance or 0,
            lifetime_points_earned=lifetime,
            tier=current,
            next_tier=upcoming,
        )

    async def quote_order(self, member: Member, order_amount: Decimal) -> OrderPointsQuote:
        status = await self.status(member)
        return order_points(order_amount, status.tier)

    async def earn_for_order(
        self,
        member_id: UUID,
        order_amount: Decimal,
        order_id: str,
        *,
        expiry_days: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> OrderEarning:
        """Credit tier-rated points for an order once per order id."""

        order_id = (order_id or "").strip()
        if not order_id:
            raise EventValidationError("Order id is required")

        # Tier placement must not shift under a concurrent posting.
        member = await self._lock_member(member_id)
        quote = await self.quote_order(member, order_amount)
        reference_id = f"order:{order_id}"

        existing = (
            await self._db.execute(
                select(LedgerTransaction).where(
                    LedgerTransaction.member_id == member.id,
                    LedgerTransaction.reference_id == reference_id,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("Order points already credited", member_id=str(member.id), reference_id=reference_id)
            return OrderEarning(quote=quote, transaction=existing, points_added=False)
        if quote.points <= 0:
            return OrderEarning(quote=quote, transaction=None, points_added=False)

        ledger = PointsLedgerService(self._db, default_expiry_days=self._default_expiry_days)
        transaction = await ledger.earn(
            member.id,
            quote.points,
            reference_id,
            expiry_days=expiry_days,
            description=f"Earned {quote.points} points from order {order_id}",
            metadata={
                **(metadata or {}),
                "order_id": order_id,
                "order_amount": str(order_amount),
                "tier": quote.tier_name,
            },
        )
        return OrderEarning(quote=quote, transaction=transaction, points_added=True)

    async def quote_redemption(
        self,
        member: Member,
        order_amount: Decimal,
        requested_points: int | None = None,
    ) -> RedemptionQuote:
        status = await self.status(member)
        return redemption_limits(status.points_balance, order_amount, status.tier, requested_points)

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
