from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.db.session import get_session
from rewardloop_api.services.reporting import ReportingService

router = APIRouter(prefix="/reporting", tags=["reporting"])


class RuleEnrollmentResponse(BaseModel):
    ruleId: UUID
    name: str
    ruleType: str
    isActive: bool
    currentEnrollments: int
    maxEnrollments: Optional[int]
    enrollmentsInWindow: int


class LedgerActivityResponse(BaseModel):
    pointsOutstanding: int
    memberCount: int
    totalsByType: Dict[str, int]


class ReportSummaryResponse(BaseModel):
    clientId: UUID
    computedAt: datetime
    windowDays: int
    ledger: LedgerActivityResponse
    rules: List[RuleEnrollmentResponse]
    ruleOutcomes: Dict[str, int]
    communicationStatuses: Dict[str, int]
    rewardAllocations: Dict[str, int]


@router.get("/{client_id}/summary", response_model=ReportSummaryResponse)
async def get_report_summary(
    client_id: UUID,
    window_days: int = Query(30, alias="windowDays", ge=1, le=365),
    db: AsyncSession = Depends(get_session),
) -> ReportSummaryResponse:
    summary = await ReportingService(db, window_days=window_days).summary(client_id)
    return ReportSummaryResponse(
        clientId=summary.client_id,
        computedAt=summary.computed_at,
        windowDays=summary.window_days,
        ledger=LedgerActivityResponse(
            pointsOutstanding=summary.ledger.points_outstanding,
            memberCount=summary.ledger.member_count,
            totalsByType=summary.ledger.totals_by_type,
        ),
        rules=[
            RuleEnrollmentResponse(
                ruleId=rule.rule_id,
                name=rule.name,
                ruleType=rule.rule_type,
                isActive=rule.is_active,
                currentEnrollments=rule.current_enrollments,
                maxEnrollments=rule.max_enrollments,
                enrollmentsInWindow=rule.enrollments_in_window,
            )
            for rule in summary.rules
        ],
        ruleOutcomes=summary.rule_outcomes,
        communicationStatuses=summary.communication_statuses,
        rewardAllocations=summary.reward_allocations,
    )
