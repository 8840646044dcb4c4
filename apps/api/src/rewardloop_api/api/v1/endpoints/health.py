from __future__ import annotations

from typing import Any, Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.settings import settings
from rewardloop_api.db.session import get_session
from rewardloop_api.observability.engine import get_engine_store
from rewardloop_api.observability.scheduler import get_scheduler_store

router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]
    metrics: Dict[str, Any] = Field(default_factory=dict)


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


def _worker_status(request: Request, attr: str, enabled: bool, label: str) -> ComponentStatus:
    if not enabled:
        return ComponentStatus(status="disabled", detail=f"{label} disabled via settings")
    worker = getattr(request.app.state, attr, None)
    running = bool(getattr(worker, "is_running", False))
    return ComponentStatus(status="ready" if running else "starting", detail=None if running else f"{label} not running")


@router.get("/health/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    overall: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
        components["database"] = ComponentStatus(status="ready")
    except Exception as exc:
        logger.exception("Readiness database check failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail=str(exc))
        overall = "error"

    components["expiry_sweep"] = _worker_status(
        request, "expiry_sweep_worker", settings.expiry_sweep_worker_enabled, "Expiry sweep worker"
    )
    components["communication_dispatch"] = _worker_status(
        request,
        "communication_dispatch_worker",
        settings.communication_dispatch_worker_enabled,
        "Communication dispatch worker",
    )

    scheduler_metrics = get_scheduler_store().snapshot()
    if settings.job_scheduler_enabled:
        scheduler = getattr(request.app.state, "job_scheduler", None)
        running = bool(getattr(scheduler, "is_running", False))
        failing = [job_id for job_id, job in scheduler_metrics.items() if job["totals"]["consecutive_failures"] > 0]
        if failing:
            components["job_scheduler"] = ComponentStatus(status="error", detail=f"Jobs failing: {', '.join(failing)}")
            overall = "error"
        else:
            components["job_scheduler"] = ComponentStatus(
                status="ready" if running else "starting",
                detail=None if running else "Job scheduler not running",
            )
    else:
        components["job_scheduler"] = ComponentStatus(status="disabled", detail="Job scheduler disabled via settings")

    if overall == "ready" and any(component.status == "starting" for component in components.values()):
        overall = "degraded"

    return ReadinessPayload(
        status=overall,
        components=components,
        metrics={"engine": get_engine_store().snapshot().as_dict(), "scheduler": scheduler_metrics},
    )
