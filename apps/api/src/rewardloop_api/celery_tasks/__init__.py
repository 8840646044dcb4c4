"""Celery task modules for the loyalty engine."""

# Import submodules so Celery autodiscovery registers tasks.
from . import engine as _engine  # noqa: F401

__all__ = ["_engine"]
