"""Event intake: evaluate inline or hand off to the Celery queue."""

from __future__ import annotations

from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, Response, status
from pydantic import BaseModel

from rewardloop_api.api.dependencies.engine import get_rule_engine
from rewardloop_api.api.errors import http_error
from rewardloop_api.celery_tasks.engine import evaluate
from rewardloop_api.services.errors import RewardLoopError
from rewardloop_api.services.rules import CampaignRuleEngine, RuleDecision, TriggerEvent

router = APIRouter(prefix="/events", tags=["events"])


class RuleDecisionResponse(BaseModel):
    ruleId: UUID
    ruleName: str
    outcome: str
    reason: Optional[str]
    memberId: Optional[UUID]
    enrollmentId: Optional[UUID]
    pointsAwarded: int
    transactionId: Optional[UUID]
    allocationId: Optional[UUID]
    voucherCode: Optional[str]
    communicationId: Optional[UUID]
    details: dict[str, Any]


class EventEvaluationResponse(BaseModel):
    referenceId: str
    queued: bool = False
    taskId: Optional[str] = None
    decisions: List[RuleDecisionResponse] = []


def _serialize_decision(decision: RuleDecision) -> RuleDecisionResponse:
    return RuleDecisionResponse(
        ruleId=decision.rule_id,
        ruleName=decision.rule_name,
        outcome=decision.outcome.value,
        reason=decision.reason,
        memberId=decision.member_id,
        enrollmentId=decision.enrollment_id,
        pointsAwarded=decision.points_awarded,
        transactionId=decision.transaction_id,
        allocationId=decision.allocation_id,
        voucherCode=decision.voucher_code,
        communicationId=decision.communication_id,
        details=decision.details,
    )


@router.post("", response_model=EventEvaluationResponse)
async def submit_event(
    response: Response,
    payload: dict[str, Any] = Body(...),
    enqueue: bool = Query(False, description="Queue for the Celery worker instead of evaluating inline"),
    engine: CampaignRuleEngine = Depends(get_rule_engine),
) -> EventEvaluationResponse:
    try:
        event = TriggerEvent.parse(payload)
    except RewardLoopError as exc:
        raise http_error(exc) from exc

    if enqueue:
        result = evaluate.delay(event.model_dump(mode="json"))
        response.status_code = status.HTTP_202_ACCEPTED
        return EventEvaluationResponse(referenceId=event.reference_id, queued=True, taskId=result.id)

    try:
        decisions = await engine.evaluate(event)
    except RewardLoopError as exc:
        raise http_error(exc) from exc
    return EventEvaluationResponse(
        referenceId=event.reference_id,
        decisions=[_serialize_decision(decision) for decision in decisions],
    )
