from __future__ import annotations

from typing import Any

from loguru import logger

from rewardloop_api.celery_app import celery_app
from rewardloop_api.core.settings import settings
from rewardloop_api.tasks.engine import dispatch_pending_sync, evaluate_event_sync, expire_due_points_sync


@celery_app.task(name="events.evaluate", queue=settings.celery_events_queue)
def evaluate(event: dict[str, Any]) -> dict[str, Any]:
    """Evaluate one trigger event. Redelivery is safe: the reference id dedupes."""

    try:
        return evaluate_event_sync(event)
    except Exception:
        logger.exception("Event evaluation task failed", reference_id=event.get("reference_id"))
        raise


@celery_app.task(name="ledger.expire_due_points")
def expire_points(limit: int | None = None) -> dict[str, Any]:
    return expire_due_points_sync(limit)


@celery_app.task(name="communications.dispatch_pending")
def dispatch_communications(client_id: str | None = None, limit: int | None = None) -> dict[str, Any]:
    try:
        return dispatch_pending_sync(client_id, limit)
    except Exception:
        logger.exception("Communication dispatch task failed", client_id=client_id)
        raise
