from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.db.session import get_session
from rewardloop_api.services.members import MemberService

router = APIRouter(prefix="/referrals", tags=["referrals"])


class ReferralLookupResponse(BaseModel):
    code: str
    clientId: UUID
    referrerMemberId: UUID
    referrerName: str


@router.get("/{code}", response_model=ReferralLookupResponse)
async def lookup_referral_code(
    code: str,
    client_id: UUID = Query(..., alias="clientId"),
    db: AsyncSession = Depends(get_session),
) -> ReferralLookupResponse:
    """Resolve a referral code to its referrer before the referred party signs up."""

    member = await MemberService(db).find_by_referral_code(client_id, code)
    if member is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Referral code not found")
    return ReferralLookupResponse(
        code=member.referral_code,
        clientId=member.client_id,
        referrerMemberId=member.id,
        referrerName=member.display_name,
    )
