"""Recurring job entrypoints for the loyalty engine."""

from .birthdays import run_birthday_sweep  # noqa: F401
from .communications import dispatch_pending  # noqa: F401
from .ledger import expire_due_points  # noqa: F401

__all__ = [
    "dispatch_pending",
    "expire_due_points",
    "run_birthday_sweep",
]
