"""Worker wiring for the pending-communication sweep."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Mapping

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.settings import settings
from rewardloop_api.models.communication import CommunicationChannel
from rewardloop_api.services.communications import ChannelAdapter, CommunicationDispatcher

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class CommunicationDispatchWorker:
    """Sends due pending communications on an interval.

    Each pass leases records before sending, so several workers (or a worker
    and the Celery task) can sweep at once without double delivery.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        adapters: Mapping[CommunicationChannel, ChannelAdapter] | None = None,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self._dispatcher = CommunicationDispatcher(session_factory, adapters=adapters)
        self.interval_seconds = interval_seconds or settings.communication_dispatch_interval_seconds
        self._batch_size = batch_size or settings.communication_batch_size
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    @property
    def dispatcher(self) -> CommunicationDispatcher:
        return self._dispatcher

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Communication dispatch worker started",
            interval_seconds=self.interval_seconds,
            batch_size=self._batch_size,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Communication dispatch worker stopped")

    async def run_once(self) -> Dict[str, Any]:
        return await self._dispatcher.send_pending(limit=self._batch_size)

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("Communication dispatch iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
