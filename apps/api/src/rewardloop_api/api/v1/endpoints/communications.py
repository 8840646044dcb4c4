"""Communication records: listing, manual send, requeue and provider callbacks."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.api.dependencies.engine import get_dispatcher
from rewardloop_api.api.errors import http_error
from rewardloop_api.db.session import get_session
from rewardloop_api.models.communication import CommunicationRecord, CommunicationStatus
from rewardloop_api.services.communications import CommunicationDispatcher, CommunicationService
from rewardloop_api.services.errors import RewardLoopError

router = APIRouter(prefix="/communications", tags=["communications"])


class CommunicationResponse(BaseModel):
    id: UUID
    clientId: UUID
    memberId: UUID
    ruleId: Optional[UUID]
    channel: str
    recipient: str
    subject: Optional[str]
    body: Optional[str]
    personalizedUrl: Optional[str]
    fallbackRender: bool
    status: str
    attemptCount: int
    maxAttempts: int
    nextAttemptAt: Optional[datetime]
    errorMessage: Optional[str]
    providerMessageId: Optional[str]
    createdAt: datetime
    sentAt: Optional[datetime]
    deliveredAt: Optional[datetime]
    clickedAt: Optional[datetime]


class CommunicationPageResponse(BaseModel):
    records: List[CommunicationResponse]
    nextCursor: Optional[str]


class SendResponse(BaseModel):
    id: UUID
    status: str
    delivered: bool
    skipped: bool
    attemptCount: int
    error: Optional[str]


class StatusCallbackRequest(BaseModel):
    communicationId: Optional[UUID] = None
    providerMessageId: Optional[str] = None
    status: Literal["delivered", "clicked", "failed"]
    detail: Optional[str] = None

    @model_validator(mode="after")
    def _require_target(self) -> "StatusCallbackRequest":
        if self.communicationId is None and not self.providerMessageId:
            raise ValueError("communicationId or providerMessageId must be provided")
        return self


class StatusCallbackResponse(BaseModel):
    id: UUID
    status: str
    applied: bool


def _serialize_record(record: CommunicationRecord) -> CommunicationResponse:
    return CommunicationResponse(
        id=record.id,
        clientId=record.client_id,
        memberId=record.member_id,
        ruleId=record.rule_id,
        channel=record.channel.value,
        recipient=record.recipient,
        subject=record.subject,
        body=record.body,
        personalizedUrl=record.personalized_url,
        fallbackRender=bool(record.fallback_render),
        status=record.status.value,
        attemptCount=record.attempt_count or 0,
        maxAttempts=record.max_attempts,
        nextAttemptAt=record.next_attempt_at,
        errorMessage=record.error_message,
        providerMessageId=record.provider_message_id,
        createdAt=record.created_at,
        sentAt=record.sent_at,
        deliveredAt=record.delivered_at,
        clickedAt=record.clicked_at,
    )


@router.get("", response_model=CommunicationPageResponse)
async def list_communications(
    client_id: UUID = Query(..., alias="clientId"),
    status_filter: Optional[str] = Query(None, alias="status"),
    member_id: Optional[UUID] = Query(None, alias="memberId"),
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_session),
) -> CommunicationPageResponse:
    parsed_status = None
    if status_filter:
        try:
            parsed_status = CommunicationStatus(status_filter)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported status: {status_filter}") from exc
    try:
        page = await CommunicationService(db).list_records(
            client_id,
            status=parsed_status,
            member_id=member_id,
            limit=limit,
            cursor=cursor,
        )
    except RewardLoopError as exc:
        raise http_error(exc) from exc
    return CommunicationPageResponse(
        records=[_serialize_record(record) for record in page.records],
        nextCursor=page.next_cursor,
    )


@router.post("/{communication_id}/send", response_model=SendResponse)
async def send_communication(
    communication_id: UUID,
    dispatcher: CommunicationDispatcher = Depends(get_dispatcher),
) -> SendResponse:
    try:
        result = await dispatcher.send(communication_id)
    except RewardLoopError as exc:
        raise http_error(exc) from exc
    return SendResponse(
        id=result.record_id,
        status=result.status.value,
        delivered=result.delivered,
        skipped=result.skipped,
        attemptCount=result.attempt_count,
        error=result.error,
    )


@router.post(
    "/{communication_id}/requeue",
    response_model=CommunicationResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def requeue_communication(
    communication_id: UUID,
    force: bool = Query(False, description="Resend an already delivered message as a new record"),
    db: AsyncSession = Depends(get_session),
) -> CommunicationResponse:
    try:
        record = await CommunicationService(db).requeue(communication_id, force=force)
    except RewardLoopError as exc:
        await db.rollback()
        raise http_error(exc) from exc
    await db.commit()
    return _serialize_record(record)


@router.post("/status", response_model=StatusCallbackResponse)
async def communication_status_callback(
    payload: StatusCallbackRequest,
    db: AsyncSession = Depends(get_session),
) -> StatusCallbackResponse:
    try:
        result = await CommunicationService(db).apply_status_update(
            CommunicationStatus(payload.status),
            record_id=payload.communicationId,
            provider_message_id=payload.providerMessageId,
            detail=payload.detail,
        )
    except RewardLoopError as exc:
        await db.rollback()
        raise http_error(exc) from exc
    await db.commit()
    return StatusCallbackResponse(id=result.record.id, status=result.record.status.value, applied=result.applied)
