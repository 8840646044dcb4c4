"""Scheduling utilities for recurring sweeps."""

from .config import JobDefinition, RetryPolicy, ScheduleConfig, load_job_definitions, parse_schedule
from .runner import JobScheduler, resolve_task

__all__ = [
    "JobDefinition",
    "JobScheduler",
    "RetryPolicy",
    "ScheduleConfig",
    "load_job_definitions",
    "parse_schedule",
    "resolve_task",
]
