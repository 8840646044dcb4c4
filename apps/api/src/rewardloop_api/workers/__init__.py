"""Background workers supporting async processing."""

from .communication_dispatch import CommunicationDispatchWorker
from .expiry_sweep import ExpirySweepWorker

__all__ = [
    "CommunicationDispatchWorker",
    "ExpirySweepWorker",
]
