"""Member balance, ledger history and operator postings."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.api.errors import http_error
from rewardloop_api.core.settings import settings
from rewardloop_api.db.session import get_session
from rewardloop_api.models.ledger import LedgerTransaction, LedgerTransactionType
from rewardloop_api.models.tenant import Member
from rewardloop_api.models.tier import LoyaltyTier
from rewardloop_api.services.errors import RewardLoopError
from rewardloop_api.services.ledger import PointsLedgerService
from rewardloop_api.services.members import MemberService
from rewardloop_api.services.tiers import TierService

router = APIRouter(prefix="/members", tags=["members"])


class MemberBalanceResponse(BaseModel):
    memberId: UUID
    clientId: UUID
    externalId: str
    displayName: str
    referralCode: Optional[str]
    pointsBalance: int
    lifetimePointsEarned: int
    lifetimePointsRedeemed: int
    outstandingLotPoints: int
    ledgerConsistent: bool


class LedgerTransactionResponse(BaseModel):
    id: UUID
    sequence: int
    type: str
    points: int
    balanceAfter: int
    referenceId: str
    description: Optional[str]
    metadata: Optional[dict[str, Any]]
    createdAt: datetime


class LedgerHistoryResponse(BaseModel):
    transactions: List[LedgerTransactionResponse]
    nextCursor: Optional[int]


class EarnRequest(BaseModel):
    points: int = Field(..., gt=0)
    referenceId: str = Field(..., min_length=1)
    expiryDays: Optional[int] = Field(None, gt=0)
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class RedeemRequest(BaseModel):
    points: int = Field(..., gt=0)
    referenceId: str = Field(..., min_length=1)
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class AdjustRequest(BaseModel):
    points: int = Field(..., description="Signed correction, never zero")
    referenceId: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    metadata: Optional[dict[str, Any]] = None


def _serialize_transaction(transaction: LedgerTransaction) -> LedgerTransactionResponse:
    return LedgerTransactionResponse(
        id=transaction.id,
        sequence=transaction.sequence,
        type=transaction.transaction_type.value,
        points=transaction.points_amount,
        balanceAfter=transaction.balance_after,
        referenceId=transaction.reference_id,
        description=transaction.description,
        metadata=transaction.metadata_json,
        createdAt=transaction.created_at,
    )


def _ledger(db: AsyncSession) -> PointsLedgerService:
    return PointsLedgerService(db, default_expiry_days=settings.ledger_default_expiry_days)


async def _load_member(db: AsyncSession, client_id: UUID, identifier: str) -> Member:
    try:
        return await MemberService(db).require_member(client_id, identifier)
    except RewardLoopError as exc:
        raise http_error(exc) from exc


@router.get("/{client_id}/{identifier}", response_model=MemberBalanceResponse)
async def get_member_balance(
    client_id: UUID,
    identifier: str,
    db: AsyncSession = Depends(get_session),
) -> MemberBalanceResponse:
    member = await _load_member(db, client_id, identifier)
    reconciliation = await _ledger(db).reconcile(member.id)
    return MemberBalanceResponse(
        memberId=member.id,
        clientId=member.client_id,
        externalId=member.external_id,
        displayName=member.display_name,
        referralCode=member.referral_code,
        pointsBalance=member.points_balance or 0,
        lifetimePointsEarned=member.lifetime_points_earned or 0,
        lifetimePointsRedeemed=member.lifetime_points_redeemed or 0,
        outstandingLotPoints=reconciliation.outstanding_lot_points,
        ledgerConsistent=reconciliation.consistent,
    )


@router.get("/{client_id}/{identifier}/ledger", response_model=LedgerHistoryResponse)
async def get_member_ledger(
    client_id: UUID,
    identifier: str,
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[int] = Query(None, ge=0, description="Sequence to page before"),
    types: Optional[List[str]] = Query(None, alias="type"),
    db: AsyncSession = Depends(get_session),
) -> LedgerHistoryResponse:
    member = await _load_member(db, client_id, identifier)
    transaction_types: list[LedgerTransactionType] = []
    for value in types or []:
        try:
            transaction_types.append(LedgerTransactionType(value))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported ledger type: {value}") from exc

    page = await _ledger(db).history(
        member.id,
        limit=limit,
        before_sequence=cursor,
        transaction_types=transaction_types or None,
    )
    return LedgerHistoryResponse(
        transactions=[_serialize_transaction(transaction) for transaction in page.transactions],
        nextCursor=page.next_cursor,
    )


@router.post("/{client_id}/{identifier}/earn", response_model=LedgerTransactionResponse)
async def earn_points(
    client_id: UUID,
    identifier: str,
    payload: EarnRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerTransactionResponse:
    member = await _load_member(db, client_id, identifier)
    try:
        transaction = await _ledger(db).earn(
            member.id,
            payload.points,
            payload.referenceId,
            expiry_days=payload.expiryDays,
            description=payload.description,
            metadata=payload.metadata,
        )
    except RewardLoopError as exc:
        await db.rollback()
        raise http_error(exc) from exc
    await db.commit()
    return _serialize_transaction(transaction)


@router.post("/{client_id}/{identifier}/redeem", response_model=LedgerTransactionResponse)
async def redeem_points(
    client_id: UUID,
    identifier: str,
    payload: RedeemRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerTransactionResponse:
    member = await _load_member(db, client_id, identifier)
    try:
        transaction = await _ledger(db).redeem(
            member.id,
            payload.points,
            payload.referenceId,
            description=payload.description,
            metadata=payload.metadata,
        )
    except RewardLoopError as exc:
        await db.rollback()
        raise http_error(exc) from exc
    await db.commit()
    return _serialize_transaction(transaction)


@router.post("/{client_id}/{identifier}/adjust", response_model=LedgerTransactionResponse)
async def adjust_points(
    client_id: UUID,
    identifier: str,
    payload: AdjustRequest,
    db: AsyncSession = Depends(get_session),
) -> LedgerTransactionResponse:
    member = await _load_member(db, client_id, identifier)
    try:
        transaction = await _ledger(db).adjust(
            member.id,
            payload.points,
            payload.referenceId,
            reason=payload.reason,
            metadata=payload.metadata,
        )
    except RewardLoopError as exc:
        await db.rollback()
        raise http_error(exc) from exc
    await db.commit()
    return _serialize_transaction(transaction)


class TierSummary(BaseModel):
    name: str
    level: int
    minPoints: int
    pointsEarnRate: Decimal
    pointsEarnDivisor: Decimal
    maxRedemptionPercent: Optional[int]
    maxRedemptionPoints: Optional[int]
    pointsValue: Decimal
    benefits: Optional[str]


class TierStatusResponse(BaseModel):
    memberId: UUID
    pointsBalance: int
    lifetimePointsEarned: int
    tier: Optional[TierSummary]
    nextTier: Optional[TierSummary]
    pointsToNextTier: int


class OrderEarnRequest(BaseModel):
    orderId: str = Field(..., min_length=1)
    orderAmount: Decimal = Field(..., ge=0)
    expiryDays: Optional[int] = Field(None, gt=0)
    metadata: Optional[dict[str, Any]] = None


class OrderEarnResponse(BaseModel):
    points: int
    pointsAdded: bool
    orderAmount: Decimal
    tierName: Optional[str]
    earnRate: Decimal
    earnDivisor: Decimal
    transaction: Optional[LedgerTransactionResponse]
    newBalance: Optional[int]


class RedemptionQuoteRequest(BaseModel):
    orderAmount: Decimal = Field(..., ge=0)
    pointsToRedeem: Optional[int] = Field(None, gt=0)


class RedemptionQuoteResponse(BaseModel):
    canRedeem: bool
    pointsBalance: int
    maxPoints: int
    pointsToRedeem: int
    discountValue: Decimal
    pointsValue: Decimal
    reason: Optional[str]


def _serialize_tier(tier: LoyaltyTier | None) -> Optional[TierSummary]:
    if tier is None:
        return None
    return TierSummary(
        name=tier.name,
        level=tier.level or 0,
        minPoints=tier.min_points or 0,
        pointsEarnRate=tier.points_earn_rate,
        pointsEarnDivisor=tier.points_earn_divisor,
        maxRedemptionPercent=tier.max_redemption_percent,
        maxRedemptionPoints=tier.max_redemption_points,
        pointsValue=tier.points_value,
        benefits=tier.benefits,
    )


def _tiers(db: AsyncSession) -> TierService:
    return TierService(db, default_expiry_days=settings.ledger_default_expiry_days)


@router.get("/{client_id}/{identifier}/tier", response_model=TierStatusResponse)
async def get_member_tier(
    client_id: UUID,
    identifier: str,
    db: AsyncSession = Depends(get_session),
) -> TierStatusResponse:
    member = await _load_member(db, client_id, identifier)
    tier_status = await _tiers(db).status(member)
    return TierStatusResponse(
        memberId=member.id,
        pointsBalance=tier_status.points_balance,
        lifetimePointsEarned=tier_status.lifetime_points_earned,
        tier=_serialize_tier(tier_status.tier),
        nextTier=_serialize_tier(tier_status.next_tier),
        pointsToNextTier=tier_status.points_to_next_tier,
    )


@router.post("/{client_id}/{identifier}/orders", response_model=OrderEarnResponse)
async def earn_for_order(
    client_id: UUID,
    identifier: str,
    payload: OrderEarnRequest,
    db: AsyncSession = Depends(get_session),
) -> OrderEarnResponse:
    member = await _load_member(db, client_id, identifier)
    try:
        earning = await _tiers(db).earn_for_order(
            member.id,
            payload.orderAmount,
            payload.orderId,
            expiry_days=payload.expiryDays,
            metadata=payload.metadata,
        )
    except RewardLoopError as exc:
        await db.rollback()
        raise http_error(exc) from exc
    await db.commit()

    transaction = earning.transaction
    return OrderEarnResponse(
        points=earning.quote.points,
        pointsAdded=earning.points_added,
        orderAmount=earning.quote.order_amount,
        tierName=earning.quote.tier_name,
        earnRate=earning.quote.earn_rate,
        earnDivisor=earning.quote.earn_divisor,
        transaction=_serialize_transaction(transaction) if transaction is not None else None,
        newBalance=transaction.balance_after if earning.points_added else None,
    )


@router.post("/{client_id}/{identifier}/redemption-quote", response_model=RedemptionQuoteResponse)
async def quote_redemption(
    client_id: UUID,
    identifier: str,
    payload: RedemptionQuoteRequest,
    db: AsyncSession = Depends(get_session),
) -> RedemptionQuoteResponse:
    member = await _load_member(db, client_id, identifier)
    try:
        quote = await _tiers(db).quote_redemption(member, payload.orderAmount, payload.pointsToRedeem)
    except RewardLoopError as exc:
        raise http_error(exc) from exc
    return RedemptionQuoteResponse(
        canRedeem=quote.can_redeem,
        pointsBalance=quote.points_balance,
        maxPoints=quote.max_points,
        pointsToRedeem=quote.points_to_redeem,
        discountValue=quote.discount_value,
        pointsValue=quote.points_value,
        reason=quote.reason,
    )
