"""Domain errors raised by the ledger, rule engine, issuer and dispatcher."""

from __future__ import annotations

from uuid import UUID


class RewardLoopError(Exception):
    """Base class for engine errors."""


class EventValidationError(RewardLoopError):
    """Incoming event or request is malformed."""


class DuplicateReferenceError(RewardLoopError):
    def __init__(self, member_id: UUID, reference_id: str) -> None:
        super().__init__(f"Reference {reference_id} already posted for member {member_id}")
        self.member_id = member_id
        self.reference_id = reference_id


class InsufficientBalanceError(RewardLoopError):
    def __init__(self, member_id: UUID, balance: int, requested: int) -> None:
        super().__init__(f"Member {member_id} has {balance} points, {requested} requested")
        self.member_id = member_id
        self.balance = balance
        self.requested = requested


class MemberNotFoundError(RewardLoopError):
    pass


class OutOfStockError(RewardLoopError):
    def __init__(self, reward_id: UUID) -> None:
        super().__init__(f"No unused codes left for reward {reward_id}")
        self.reward_id = reward_id


class RewardNotFoundError(RewardLoopError):
    pass


class CapExceededError(RewardLoopError):
    def __init__(self, rule_id: UUID) -> None:
        super().__init__(f"Enrollment cap reached for rule {rule_id}")
        self.rule_id = rule_id


class AlreadyRedeemedError(RewardLoopError):
    pass


class VoucherNotFoundError(RewardLoopError):
    pass


class CommunicationNotFoundError(RewardLoopError):
    pass


class ProviderError(RewardLoopError):
    """Channel adapter failure."""

    def __init__(self, message: str, *, response: dict | None = None) -> None:
        super().__init__(message)
        self.response = response


class TransientProviderError(ProviderError):
    """Retryable: timeouts, throttling, 5xx."""


class PermanentProviderError(ProviderError):
    """Not retryable: invalid recipient, rejected content, 4xx."""


__all__ = [
    "AlreadyRedeemedError",
    "CapExceededError",
    "CommunicationNotFoundError",
    "DuplicateReferenceError",
    "EventValidationError",
    "InsufficientBalanceError",
    "MemberNotFoundError",
    "OutOfStockError",
    "PermanentProviderError",
    "ProviderError",
    "RewardLoopError",
    "RewardNotFoundError",
    "TransientProviderError",
    "VoucherNotFoundError",
]
