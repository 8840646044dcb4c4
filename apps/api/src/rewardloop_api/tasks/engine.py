"""Synchronous entrypoints wrapping the async engine.

Celery workers and CLI runners call these; each call runs its own event loop
and releases pooled connections before returning.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, TypeVar
from uuid import UUID

from loguru import logger

from rewardloop_api.db.session import async_session, engine as db_engine
from rewardloop_api.jobs.communications import dispatch_pending
from rewardloop_api.jobs.ledger import expire_due_points
from rewardloop_api.services.rules import CampaignRuleEngine, TriggerEvent

SessionFactory = Callable[[], Any]
T = TypeVar("T")


async def evaluate_event(data: Mapping[str, Any], *, session_factory: SessionFactory | None = None) -> dict[str, Any]:
    """Validate and evaluate a raw event payload."""

    event = TriggerEvent.parse(dict(data))
    rule_engine = CampaignRuleEngine(session_factory or async_session)
    decisions = await rule_engine.evaluate(event)
    logger.info(
        "Event task evaluated",
        client_id=str(event.client_id),
        reference_id=event.reference_id,
        decisions=len(decisions),
    )
    return {
        "referenceId": event.reference_id,
        "decisions": [decision.as_dict() for decision in decisions],
    }


async def _run_and_dispose(coro: Awaitable[T]) -> T:
    try:
        return await coro
    finally:
        await db_engine.dispose()


def evaluate_event_sync(data: Mapping[str, Any]) -> dict[str, Any]:
    return asyncio.run(_run_and_dispose(evaluate_event(data)))


def expire_due_points_sync(limit: int | None = None) -> dict[str, Any]:
    return asyncio.run(_run_and_dispose(expire_due_points(session_factory=async_session, limit=limit)))


def dispatch_pending_sync(client_id: str | None = None, limit: int | None = None) -> dict[str, Any]:
    client_uuid = UUID(client_id) if client_id else None
    return asyncio.run(
        _run_and_dispose(dispatch_pending(session_factory=async_session, client_id=client_uuid, limit=limit))
    )


__all__ = [
    "dispatch_pending_sync",
    "evaluate_event",
    "evaluate_event_sync",
    "expire_due_points_sync",
]
