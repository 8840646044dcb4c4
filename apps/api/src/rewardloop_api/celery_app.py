"""Celery application for event evaluation and background sweeps."""

from __future__ import annotations

from celery import Celery
from celery.signals import setup_logging

from rewardloop_api.core.logging import configure_logging
from rewardloop_api.core.settings import settings


def _resolve_broker_url() -> str:
    return settings.celery_broker_url or settings.redis_url


def _resolve_backend_url() -> str:
    return settings.celery_result_backend or settings.redis_url


celery_app = Celery(
    "rewardloop_api",
    broker=_resolve_broker_url(),
    backend=_resolve_backend_url(),
)

celery_app.conf.update(
    task_default_queue=settings.celery_default_queue,
    task_acks_late=True,
    timezone="UTC",
    broker_connection_retry_on_startup=True,
)

celery_app.autodiscover_tasks(["rewardloop_api.celery_tasks"])


@setup_logging.connect
def _configure_worker_logging(**_: object) -> None:
    # Connecting this signal stops Celery from installing its own handlers.
    from rewardloop_api.app import APP_VERSION

    configure_logging(
        service_name="rewardloop-worker",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )


__all__ = ["celery_app"]
