"""Claim, render, send and settle communication records."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import utcnow
from rewardloop_api.core.settings import settings
from rewardloop_api.models.communication import (
    CommunicationChannel,
    CommunicationRecord,
    CommunicationStatus,
    SETTLED_STATUSES,
)
from rewardloop_api.observability.engine import get_engine_store
from rewardloop_api.services.errors import (
    CommunicationNotFoundError,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
)

from .backend import ChannelAdapter, DeliveryReceipt, build_default_adapters
from .templates import render_message

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


@dataclass
class SendResult:
    """Outcome of one ``send`` call."""

    record_id: UUID
    status: CommunicationStatus
    delivered: bool
    skipped: bool = False
    attempt_count: int = 0
    error: str | None = None


class CommunicationDispatcher:
    """Sends pending records through channel adapters.

    A record is leased with a conditional update before the adapter runs, so
    overlapping sweeps and manual sends never deliver the same record twice.
    The adapter call happens outside any database transaction.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        adapters: Mapping[CommunicationChannel, ChannelAdapter] | None = None,
        send_timeout_seconds: float | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        lease_seconds: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._adapters = dict(adapters) if adapters is not None else build_default_adapters(settings)
        self._timeout = send_timeout_seconds or settings.communication_send_timeout_seconds
        self._backoff_base = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.communication_backoff_base_seconds
        )
        self._backoff_max = backoff_max_seconds or settings.communication_backoff_max_seconds
        self._lease_seconds = lease_seconds or settings.communication_claim_lease_seconds
        self._concurrency = max(concurrency or settings.communication_send_concurrency, 1)
        self._observability = get_engine_store()

    def backoff_for(self, attempt: int) -> timedelta:
        delay = self._backoff_base * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(delay, self._backoff_max))

    async def send(self, record_id: UUID, *, respect_schedule: bool = False) -> SendResult:
        """Deliver one record; already-sent records return without resending."""

        claim_token = uuid4().hex
        now = utcnow()

        session = await self._ensure_session()
        async with session as managed_session:
            record = await managed_session.get(CommunicationRecord, record_id)
            if record is None:
                raise CommunicationNotFoundError(str(record_id))
            if record.status in SETTLED_STATUSES or record.status == CommunicationStatus.FAILED:
                return SendResult(
                    record_id=record.id,
                    status=record.status,
                    delivered=record.status in SETTLED_STATUSES,
                    skipped=True,
                    attempt_count=record.attempt_count,
                )

            conditions = [
                CommunicationRecord.id == record.id,
                CommunicationRecord.status == CommunicationStatus.PENDING,
                or_(CommunicationRecord.claimed_until.is_(None), CommunicationRecord.claimed_until < now),
            ]
            if respect_schedule:
                conditions.append(
                    or_(CommunicationRecord.next_attempt_at.is_(None), CommunicationRecord.next_attempt_at <= now)
                )

            rendered = render_message(record.template_subject, record.template_body, record.variables or {})
            claim = await managed_session.execute(
                update(CommunicationRecord)
                .where(*conditions)
                .values(
                    claimed_until=now + timedelta(seconds=self._lease_seconds),
                    claim_token=claim_token,
                    subject=rendered.subject,
                    body=rendered.text_body,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await managed_session.commit()
            if claim.rowcount == 0:
                logger.debug("Communication already claimed", communication_id=str(record_id))
                return SendResult(
                    record_id=record.id,
                    status=CommunicationStatus.PENDING,
                    delivered=False,
                    skipped=True,
                    attempt_count=record.attempt_count,
                )
            channel = record.channel
            recipient = record.recipient
            attempts_before = record.attempt_count or 0
            max_attempts = record.max_attempts or settings.communication_max_attempts

        receipt: DeliveryReceipt | None = None
        error: ProviderError | None = None
        adapter = self._adapters.get(channel)
        try:
            if adapter is None:
                raise PermanentProviderError(f"No adapter configured for channel {channel.value}")
            receipt = await asyncio.wait_for(
                adapter.send(recipient, rendered.subject, rendered.text_body),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            error = TransientProviderError(f"{channel.value} adapter timed out after {self._timeout}s")
        except ProviderError as exc:
            error = exc
        except Exception as exc:
            # Unclassified adapter failures count as an attempt and retry.
            logger.warning(
                "Channel adapter raised unexpectedly",
                communication_id=str(record_id),
                channel=channel.value,
                error_type=type(exc).__name__,
            )
            error = TransientProviderError(f"{type(exc).__name__}: {exc}")

        return await self._settle(
            record_id,
            claim_token=claim_token,
            channel=channel,
            attempts_before=attempts_before,
            max_attempts=max_attempts,
            receipt=receipt,
            error=error,
        )

    async def send_pending(self, *, client_id: UUID | None = None, limit: int | None = None) -> Dict[str, int]:
        """Send due pending records with bounded concurrency."""

        batch_limit = limit or settings.communication_batch_size
        now = utcnow()
        session = await self._ensure_session()
        async with session as managed_session:
            stmt = (
                select(CommunicationRecord.id)
                .where(
                    CommunicationRecord.status == CommunicationStatus.PENDING,
                    or_(CommunicationRecord.next_attempt_at.is_(None), CommunicationRecord.next_attempt_at <= now),
                    or_(CommunicationRecord.claimed_until.is_(None), CommunicationRecord.claimed_until < now),
                )
                .order_by(CommunicationRecord.created_at.asc())
                .limit(batch_limit)
            )
            if client_id is not None:
                stmt = stmt.where(CommunicationRecord.client_id == client_id)
            record_ids = list((await managed_session.execute(stmt)).scalars().all())
            await managed_session.commit()

        summary: Dict[str, int] = {"processed": 0, "sent": 0, "retrying": 0, "failed": 0, "skipped": 0, "errors": 0}
        if not record_ids:
            return summary

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _send_one(record_id: UUID) -> SendResult | None:
            async with semaphore:
                try:
                    return await self.send(record_id, respect_schedule=True)
                except Exception as exc:  # one bad record must not stop the batch
                    logger.exception("Communication send crashed", communication_id=str(record_id), error=str(exc))
                    return None

        results = await asyncio.gather(*(_send_one(record_id) for record_id in record_ids))
        for result in results:
            summary["processed"] += 1
            if result is None:
                summary["errors"] += 1
            elif result.skipped:
                summary["skipped"] += 1
            elif result.delivered:
                summary["sent"] += 1
            elif result.status == CommunicationStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["retrying"] += 1

        logger.bind(summary=summary).info("Communication batch dispatched")
        return summary

    async def _settle(
        self,
        record_id: UUID,
        *,
        claim_token: str,
        channel: CommunicationChannel,
        attempts_before: int,
        max_attempts: int,
        receipt: DeliveryReceipt | None,
        error: ProviderError | None,
    ) -> SendResult:
        now = utcnow()
        attempt_count = attempts_before + 1
        values: dict[str, Any] = {
            "attempt_count": attempt_count,
            "claimed_until": None,
            "claim_token": None,
            "updated_at": now,
        }
        if error is None and receipt is not None:
            status = CommunicationStatus.SENT
            values.update(
                status=status,
                sent_at=now,
                error_message=None,
                next_attempt_at=None,
                provider_message_id=receipt.provider_message_id,
                provider_response=receipt.response,
            )
            outcome = "sent"
        elif isinstance(error, TransientProviderError) and attempt_count < max_attempts:
            status = CommunicationStatus.PENDING
            values.update(
                status=status,
                error_message=str(error),
                next_attempt_at=now + self.backoff_for(attempt_count),
                provider_response=error.response,
            )
            outcome = "retrying"
        else:
            status = CommunicationStatus.FAILED
            values.update(
                status=status,
                error_message=str(error) if error else "Unknown delivery failure",
                next_attempt_at=None,
                provider_response=error.response if error else None,
            )
            outcome = "failed"

        session = await self._ensure_session()
        async with session as managed_session:
            result = await managed_session.execute(
                update(CommunicationRecord)
                .where(
                    CommunicationRecord.id == record_id,
                    CommunicationRecord.claim_token == claim_token,
                    CommunicationRecord.status == CommunicationStatus.PENDING,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await managed_session.commit()

        if result.rowcount == 0:
            # Lease expired and another sender took over; its outcome stands.
            logger.warning("Communication lease lost before settle", communication_id=str(record_id))
        self._observability.record_dispatch(outcome, channel.value)
        log = logger.info if outcome == "sent" else logger.warning
        log(
            "Communication dispatch attempt",
            communication_id=str(record_id),
            channel=channel.value,
            outcome=outcome,
            attempt=attempt_count,
            error=str(error) if error else None,
        )
        return SendResult(
            record_id=record_id,
            status=status,
            delivered=status == CommunicationStatus.SENT,
            attempt_count=attempt_count,
            error=str(error) if error else None,
        )

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["CommunicationDispatcher", "SendResult"]
