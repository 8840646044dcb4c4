from pathlib import Path

import pytest

import rewardloop_api.jobs.ledger as ledger_jobs
from rewardloop_api.observability.scheduler import get_scheduler_store
from rewardloop_api.scheduling import JobScheduler, RetryPolicy, load_job_definitions, parse_schedule, resolve_task

CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


def _config(**job_overrides):
    job = {
        "task": "rewardloop_api.jobs.ledger.expire_due_points",
        "cron": "*/15 * * * *",
        "max_attempts": 3,
        "base_backoff_seconds": 2,
        "jitter_seconds": 0,
        "kwargs": {"limit": 25},
    }
    job.update(job_overrides)
    return parse_schedule({"timezone": "UTC", "jobs": {"points_expiry": job}})


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_shipped_schedule_resolves_every_task() -> None:
    config = load_job_definitions(CONFIG_PATH)

    assert {job.id for job in config.jobs} == {"points_expiry", "communication_sweep", "birthday_sweep"}
    for job in config.jobs:
        assert resolve_task(job.task).__name__ == job.task.rsplit(".", 1)[-1]


def test_parse_schedule_reads_retry_policy_and_skips_malformed_jobs() -> None:
    config = parse_schedule(
        {
            "timezone": "Europe/Berlin",
            "jobs": {
                "nightly": {"task": "a.b", "cron": "0 2 * * *", "max_attempts": 4, "enabled": False},
                "no_cron": {"task": "a.b"},
                "not_a_table": "oops",
            },
        }
    )

    assert config.timezone == "Europe/Berlin"
    [job] = config.jobs
    assert job.id == "nightly"
    assert not job.enabled
    assert job.retry.max_attempts == 4


def test_retry_policy_backoff_is_capped() -> None:
    policy = RetryPolicy(base_backoff_seconds=5, backoff_multiplier=3, max_backoff_seconds=20)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [5, 15, 20]


def test_resolve_task_rejects_sync_callables() -> None:
    with pytest.raises(TypeError):
        resolve_task("rewardloop_api.scheduling.config.parse_schedule")
    with pytest.raises(ValueError):
        resolve_task("not_dotted")


@pytest.mark.asyncio
async def test_run_now_retries_until_success(monkeypatch) -> None:
    calls: list[dict] = []

    async def flaky(**kwargs):
        calls.append(kwargs)
        if len(calls) < 3:
            raise RuntimeError("database unavailable")
        return {"expired": 2}

    monkeypatch.setattr(ledger_jobs, "expire_due_points", flaky)
    sleep = _RecordingSleep()
    factory = object()
    scheduler = JobScheduler(session_factory=factory, config=_config(), sleep=sleep)

    result = await scheduler.run_now("points_expiry")

    assert result == {"expired": 2}
    assert sleep.delays == [2.0, 4.0]
    assert calls[0] == {"session_factory": factory, "limit": 25}

    metrics = get_scheduler_store().snapshot()["points_expiry"]
    assert metrics["totals"] == {"runs": 1, "success": 1, "failures": 0, "retries": 2, "consecutive_failures": 0}
    assert metrics["last_result"] == {"expired": 2}


@pytest.mark.asyncio
async def test_run_now_records_exhausted_failure(monkeypatch) -> None:
    async def broken(**kwargs):
        raise RuntimeError("still down")

    monkeypatch.setattr(ledger_jobs, "expire_due_points", broken)
    sleep = _RecordingSleep()
    scheduler = JobScheduler(session_factory=object(), config=_config(max_attempts=2), sleep=sleep)

    assert await scheduler.run_now("points_expiry") is None
    assert sleep.delays == [2.0]

    health = scheduler.health()
    assert health["running"] is False
    [job] = health["jobs"]
    assert job["max_attempts"] == 2
    assert job["metrics"]["totals"]["failures"] == 1
    assert job["metrics"]["last_error"] == "still down"


@pytest.mark.asyncio
async def test_run_now_unknown_job() -> None:
    scheduler = JobScheduler(session_factory=object(), config=_config())

    with pytest.raises(KeyError):
        await scheduler.run_now("missing")


@pytest.mark.asyncio
async def test_start_registers_enabled_jobs_only() -> None:
    config = parse_schedule(
        {
            "jobs": {
                "points_expiry": {"task": "rewardloop_api.jobs.ledger.expire_due_points", "cron": "0 * * * *"},
                "birthday_sweep": {
                    "task": "rewardloop_api.jobs.birthdays.run_birthday_sweep",
                    "cron": "5 0 * * *",
                    "enabled": False,
                },
            }
        }
    )
    scheduler = JobScheduler(session_factory=object(), config=config)

    scheduler.start()
    try:
        assert scheduler.is_running
        assert [job.id for job in scheduler._scheduler.get_jobs()] == ["points_expiry"]
    finally:
        await scheduler.stop()
    assert not scheduler.is_running


def test_scheduler_requires_a_config() -> None:
    with pytest.raises(ValueError):
        JobScheduler(session_factory=object())
