"""Job to flush due pending communications through their channel adapters."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Mapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.models.communication import CommunicationChannel
from rewardloop_api.observability.tracing import get_tracer
from rewardloop_api.services.communications import ChannelAdapter, CommunicationDispatcher

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def dispatch_pending(
    *,
    session_factory: SessionFactory,
    client_id: UUID | None = None,
    limit: int | None = None,
    adapters: Mapping[CommunicationChannel, ChannelAdapter] | None = None,
) -> Dict[str, Any]:
    dispatcher = CommunicationDispatcher(session_factory, adapters=adapters)
    with get_tracer().start_as_current_span("communications.dispatch_pending") as span:
        summary = await dispatcher.send_pending(client_id=client_id, limit=limit)
        span.set_attribute("communications.processed", summary["processed"])
    return summary


__all__ = ["dispatch_pending"]
