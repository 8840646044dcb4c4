"""Session-scoped communication record operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import as_utc, utcnow
from rewardloop_api.core.settings import settings
from rewardloop_api.models.communication import (
    CommunicationChannel,
    CommunicationRecord,
    CommunicationStatus,
    SETTLED_STATUSES,
    STATUS_RANK,
)
from rewardloop_api.services.errors import CommunicationNotFoundError, EventValidationError
from rewardloop_api.services.pagination import decode_time_uuid_cursor, encode_time_uuid_cursor

from .templates import render_message

# Provider callbacks that may arrive for an already-sent message.
WEBHOOK_STATUSES = (
    CommunicationStatus.DELIVERED,
    CommunicationStatus.CLICKED,
    CommunicationStatus.FAILED,
)


@dataclass
class StatusUpdateResult:
    record: CommunicationRecord
    applied: bool


@dataclass
class CommunicationPage:
    records: list[CommunicationRecord]
    next_cursor: str | None


class CommunicationService:
    """Enqueue, requeue and track communication records."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def enqueue(
        self,
        *,
        client_id: UUID,
        member_id: UUID,
        channel: CommunicationChannel,
        recipient: str,
        template_body: str,
        template_subject: str | None = None,
        variables: Mapping[str, Any] | None = None,
        rule_id: UUID | None = None,
        enrollment_id: UUID | None = None,
        allocation_id: UUID | None = None,
        template_id: UUID | None = None,
        personalized_url: str | None = None,
        dedupe_key: str | None = None,
        fallback_render: bool = False,
        max_attempts: int | None = None,
    ) -> CommunicationRecord:
        """Persist a pending record; a reused dedupe key returns the original."""

        if not recipient:
            raise EventValidationError("Communication recipient is required")
        if dedupe_key:
            existing = (
                await self._db.execute(
                    select(CommunicationRecord).where(
                        CommunicationRecord.client_id == client_id,
                        CommunicationRecord.dedupe_key == dedupe_key,
                    )
                )
            ).scalar_one_or_none()
            if existing is not None:
                return existing

        payload = {key: _stringify(value) for key, value in (variables or {}).items()}
        preview = render_message(template_subject, template_body, payload)
        record = CommunicationRecord(
            client_id=client_id,
            member_id=member_id,
            rule_id=rule_id,
            enrollment_id=enrollment_id,
            allocation_id=allocation_id,
            template_id=template_id,
            dedupe_key=dedupe_key,
            channel=channel,
            recipient=recipient,
            template_subject=template_subject,
            template_body=template_body,
            variables=payload,
            subject=preview.subject,
            body=preview.text_body,
            personalized_url=personalized_url,
            fallback_render=fallback_render,
            status=CommunicationStatus.PENDING,
            attempt_count=0,
            max_attempts=max_attempts or settings.communication_max_attempts,
            created_at=utcnow(),
        )
        self._db.add(record)
        await self._db.flush()
        logger.info(
            "Communication enqueued",
            communication_id=str(record.id),
            member_id=str(member_id),
            channel=channel.value,
        )
        return record

    async def get(self, record_id: UUID) -> CommunicationRecord:
        record = await self._db.get(CommunicationRecord, record_id, populate_existing=True)
        if record is None:
            raise CommunicationNotFoundError(str(record_id))
        return record

    async def requeue(self, record_id: UUID, *, force: bool = False) -> CommunicationRecord:
        """Manual resend.

        A failed record goes back to pending with a fresh attempt budget.
        With ``force`` a settled record is copied into a new pending record.
        """

        record = await self.get(record_id)
        if record.status == CommunicationStatus.FAILED:
            record.status = CommunicationStatus.PENDING
            record.attempt_count = 0
            record.next_attempt_at = None
            record.claimed_until = None
            record.claim_token = None
            record.error_message = None
            await self._db.flush()
            logger.info("Communication requeued", communication_id=str(record.id))
            return record
        if record.status == CommunicationStatus.PENDING:
            return record
        if not force:
            raise EventValidationError(f"Communication {record.id} already {record.status.value}")

        clone = await self.enqueue(
            client_id=record.client_id,
            member_id=record.member_id,
            channel=record.channel,
            recipient=record.recipient,
            template_body=record.template_body,
            template_subject=record.template_subject,
            variables=record.variables,
            rule_id=record.rule_id,
            enrollment_id=record.enrollment_id,
            allocation_id=record.allocation_id,
            template_id=record.template_id,
            personalized_url=record.personalized_url,
            fallback_render=record.fallback_render,
            max_attempts=record.max_attempts,
        )
        logger.info("Communication resend scheduled", source_id=str(record.id), communication_id=str(clone.id))
        return clone

    async def apply_status_update(
        self,
        status: CommunicationStatus,
        *,
        record_id: UUID | None = None,
        provider_message_id: str | None = None,
        detail: str | None = None,
    ) -> StatusUpdateResult:
        """Apply a provider callback; statuses only ever move forward."""

        if status not in WEBHOOK_STATUSES:
            raise EventValidationError(f"Unsupported status update {status.value}")
        record = await self._resolve(record_id, provider_message_id)

        if status == CommunicationStatus.FAILED:
            # Bounce: only a sent-but-unconfirmed message can fail afterwards.
            allowed = [CommunicationStatus.SENT]
        else:
            allowed = [
                candidate
                for candidate in SETTLED_STATUSES
                if STATUS_RANK[candidate] < STATUS_RANK[status]
            ]

        now = utcnow()
        values: dict[str, Any] = {"status": status, "updated_at": now}
        if status == CommunicationStatus.DELIVERED:
            values["delivered_at"] = now
        elif status == CommunicationStatus.CLICKED:
            values["clicked_at"] = now
        elif status == CommunicationStatus.FAILED:
            values["error_message"] = detail or "Provider reported delivery failure"

        result = await self._db.execute(
            update(CommunicationRecord)
            .where(CommunicationRecord.id == record.id, CommunicationRecord.status.in_(allowed))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = result.rowcount == 1
        record = await self.get(record.id)
        logger.info(
            "Communication status callback",
            communication_id=str(record.id),
            requested=status.value,
            status=record.status.value,
            applied=applied,
        )
        return StatusUpdateResult(record=record, applied=applied)

    async def list_records(
        self,
        client_id: UUID,
        *,
        status: CommunicationStatus | None = None,
        member_id: UUID | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> CommunicationPage:
        stmt = (
            select(CommunicationRecord)
            .where(CommunicationRecord.client_id == client_id)
            .order_by(CommunicationRecord.created_at.desc(), CommunicationRecord.id.desc())
            .limit(limit + 1)
        )
        if status is not None:
            stmt = stmt.where(CommunicationRecord.status == status)
        if member_id is not None:
            stmt = stmt.where(CommunicationRecord.member_id == member_id)
        if cursor:
            cursor_time, cursor_id = decode_time_uuid_cursor(cursor)
            cursor_time = as_utc(cursor_time)
            stmt = stmt.where(
                or_(
                    CommunicationRecord.created_at < cursor_time,
                    and_(CommunicationRecord.created_at == cursor_time, CommunicationRecord.id < cursor_id),
                )
            )
        rows = list((await self._db.execute(stmt)).scalars().all())
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            last = rows[-1]
            next_cursor = encode_time_uuid_cursor(as_utc(last.created_at), last.id)
        return CommunicationPage(records=rows, next_cursor=next_cursor)

    async def _resolve(self, record_id: UUID | None, provider_message_id: str | None) -> CommunicationRecord:
        if record_id is not None:
            return await self.get(record_id)
        if provider_message_id:
            stmt = select(CommunicationRecord).where(CommunicationRecord.provider_message_id == provider_message_id)
            record = (await self._db.execute(stmt)).scalars().first()
            if record is not None:
                return record
            raise CommunicationNotFoundError(provider_message_id)
        raise EventValidationError("record_id or provider_message_id is required")


def _stringify(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


__all__ = ["CommunicationPage", "CommunicationService", "StatusUpdateResult", "WEBHOOK_STATUSES"]
