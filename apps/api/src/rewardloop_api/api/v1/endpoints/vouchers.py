from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.api.errors import http_error
from rewardloop_api.db.session import get_session
from rewardloop_api.services.errors import RewardLoopError
from rewardloop_api.services.rewards import VoucherIssuer

router = APIRouter(prefix="/vouchers", tags=["vouchers"])


class VoucherRedeemRequest(BaseModel):
    code: str = Field(..., min_length=1)
    redeemedBy: Optional[str] = Field(None, description="Order or operator reference consuming the code")


class VoucherRedeemResponse(BaseModel):
    code: str
    rewardId: UUID
    memberId: Optional[UUID]
    usedAt: Optional[datetime]
    usedBy: Optional[str]


@router.post("/redeem", response_model=VoucherRedeemResponse)
async def redeem_voucher(
    payload: VoucherRedeemRequest,
    db: AsyncSession = Depends(get_session),
) -> VoucherRedeemResponse:
    try:
        voucher = await VoucherIssuer(db).mark_redeemed(payload.code.strip(), redeemed_by=payload.redeemedBy)
    except RewardLoopError as exc:
        await db.rollback()
        raise http_error(exc) from exc
    await db.commit()
    return VoucherRedeemResponse(
        code=voucher.code,
        rewardId=voucher.reward_id,
        memberId=voucher.issued_to_member_id,
        usedAt=voucher.used_at,
        usedBy=voucher.used_by,
    )
