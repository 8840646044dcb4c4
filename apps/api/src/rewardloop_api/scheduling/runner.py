"""APScheduler runtime for the engine's recurring sweeps."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger
from zoneinfo import ZoneInfo

from rewardloop_api.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(path: str) -> JobCallable:
    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {path} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {path} must be an async function")
    return func


class JobScheduler:
    """Registers cron jobs from a TOML file and runs them with retry."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        config_path: Path | None = None,
        config: ScheduleConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if config_path is None and config is None:
            raise ValueError("Either config_path or config is required")
        self._session_factory = session_factory
        self._config_path = config_path
        self._config = config
        self._sleep = sleep
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    @property
    def config(self) -> ScheduleConfig:
        if self._config is None:
            assert self._config_path is not None
            self._config = load_job_definitions(self._config_path)
        return self._config

    def start(self) -> None:
        config = self.config
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)
        registered = 0
        for job in config.jobs:
            if not job.enabled:
                logger.info("Skipping disabled job", job_id=job.id)
                continue
            func = resolve_task(job.task)
            scheduler.add_job(
                self._runner_for(func, job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            registered += 1
            logger.info("Registered scheduled job", job_id=job.id, task=job.task, cron=job.cron)
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Job scheduler started", jobs=registered)

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Job scheduler stopped")

    async def run_now(self, job_id: str) -> Any:
        """Run one configured job immediately with its retry policy."""

        for job in self.config.jobs:
            if job.id == job_id:
                return await self._runner_for(resolve_task(job.task), job)()
        raise KeyError(job_id)

    def _runner_for(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[Any]]:
        async def _runner() -> Any:
            policy = job.retry
            self._observability.record_start(job.id, job.task)
            started_at = time.perf_counter()
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    if attempt >= policy.max_attempts:
                        self._observability.record_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            error=str(exc),
                        )
                        logger.exception(
                            "Scheduled job failed after retries",
                            job_id=job.id,
                            task=job.task,
                            attempts=attempt,
                            error=str(exc),
                        )
                        return None
                    delay = policy.delay_for(attempt)
                    if policy.jitter_seconds:
                        delay += random.uniform(0, policy.jitter_seconds)
                    self._observability.record_retry(job.id, job.task, error=str(exc))
                    logger.warning(
                        "Scheduled job retrying",
                        job_id=job.id,
                        task=job.task,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    if delay:
                        await self._sleep(delay)
                    continue

                runtime = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=runtime,
                    result=result if isinstance(result, dict) else None,
                )
                logger.info(
                    "Scheduled job completed",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempt,
                    runtime_seconds=runtime,
                )
                return result

        return _runner

    def health(self) -> dict[str, object]:
        metrics = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "jobs": [
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "enabled": job.enabled,
                    "max_attempts": job.retry.max_attempts,
                    "metrics": metrics.get(job.id),
                }
                for job in jobs
            ],
        }


__all__ = ["JobScheduler", "resolve_task"]
