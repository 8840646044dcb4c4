from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from rewardloop_api.core.settings import settings
from rewardloop_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import JobScheduler
from .services.rules import CampaignRuleEngine
from .workers import CommunicationDispatchWorker, ExpirySweepWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    path = Path(settings.job_schedule_path)
    if not path.is_absolute():
        path = Path(__file__).resolve().parent.parent.parent / path
    return path


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.rule_engine = CampaignRuleEngine(_session_factory)

    expiry_worker = ExpirySweepWorker(_session_factory)
    dispatch_worker = CommunicationDispatchWorker(_session_factory)
    schedule_path = _schedule_path()
    job_scheduler = JobScheduler(session_factory=_session_factory, config_path=schedule_path)

    app.state.expiry_sweep_worker = expiry_worker
    app.state.communication_dispatch_worker = dispatch_worker
    app.state.job_scheduler = job_scheduler

    scheduler_enabled = settings.job_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Job scheduler failed to start", error=str(exc))
        else:
            logger.info("Job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Job scheduler disabled", reason="job_scheduler_enabled is false")

    if settings.expiry_sweep_worker_enabled:
        expiry_worker.start()
    else:
        logger.info("Expiry sweep worker disabled", reason="expiry_sweep_worker_enabled is false")

    if settings.communication_dispatch_worker_enabled:
        dispatch_worker.start()
    else:
        logger.info(
            "Communication dispatch worker disabled",
            reason="communication_dispatch_worker_enabled is false",
        )

    try:
        yield
    finally:
        if expiry_worker.is_running:
            await expiry_worker.stop()
        if dispatch_worker.is_running:
            await dispatch_worker.stop()
        if job_scheduler.is_running:
            await job_scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the RewardLoop engine API."""
    configure_logging(
        service_name="rewardloop-api",
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
    )

    app = FastAPI(
        title="RewardLoop API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="rewardloop-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
