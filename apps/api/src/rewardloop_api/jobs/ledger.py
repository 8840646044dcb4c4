"""Job that lapses points whose expiry lots have come due."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import utcnow
from rewardloop_api.core.settings import settings
from rewardloop_api.observability.tracing import get_tracer
from rewardloop_api.services.ledger import PointsLedgerService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    return maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session


async def expire_due_points(
    *,
    session_factory: SessionFactory,
    limit: int | None = None,
    reference_time: datetime | None = None,
) -> Dict[str, Any]:
    """Expire every due lot, one transaction per lot.

    Lots are claimed with a conditional update inside ``expire`` so several
    sweeps may overlap; the loser of a race sees a no-op.
    """

    batch_size = limit or settings.ledger_expiry_batch_size
    horizon = reference_time or utcnow()
    summary = {"scanned": 0, "expired": 0, "points_expired": 0, "noop": 0, "errors": 0}
    failed: set[UUID] = set()

    with get_tracer().start_as_current_span("ledger.expire_due_points"):
        while True:
            session = await _open(session_factory)
            async with session as managed_session:
                due = await PointsLedgerService(managed_session).list_due_lots(
                    reference_time=horizon,
                    limit=batch_size + len(failed),
                )
                await managed_session.commit()

            batch = [(member_id, lot_id) for member_id, lot_id in due if lot_id not in failed][:batch_size]
            if not batch:
                break

            for member_id, lot_id in batch:
                summary["scanned"] += 1
                try:
                    points = await _expire_lot(session_factory, member_id, lot_id)
                except Exception as exc:  # keep sweeping the remaining lots
                    failed.add(lot_id)
                    summary["errors"] += 1
                    logger.exception("Failed to expire lot", lot_id=str(lot_id), member_id=str(member_id), error=str(exc))
                    continue
                if points:
                    summary["expired"] += 1
                    summary["points_expired"] += points
                else:
                    summary["noop"] += 1

            if len(batch) < batch_size:
                break

    logger.bind(summary=summary).info("Points expiry sweep completed")
    return summary


async def _expire_lot(session_factory: SessionFactory, member_id: UUID, lot_id: UUID) -> int:
    session = await _open(session_factory)
    async with session as managed_session:
        transaction = await PointsLedgerService(managed_session).expire(member_id, lot_id)
        await managed_session.commit()
    return -transaction.points_amount if transaction is not None else 0


__all__ = ["expire_due_points"]
