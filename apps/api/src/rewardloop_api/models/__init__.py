from .tenant import Client, Member, MembershipProgram  # noqa: F401
from .ledger import ExpiryLot, LedgerTransaction, LedgerTransactionType, LotConsumption  # noqa: F401
from .communication import (  # noqa: F401
    CommunicationChannel,
    CommunicationRecord,
    CommunicationStatus,
    MessageTemplate,
)
from .reward import CouponType, Reward, RewardAllocation, RewardAllocationStatus, Voucher  # noqa: F401
from .tier import LoyaltyTier  # noqa: F401
from .campaign import (  # noqa: F401
    CampaignRule,
    CooldownBasis,
    Enrollment,
    EnrollmentStatus,
    EvaluationOutcome,
    RuleEvaluation,
    RuleType,
)

__all__ = [
    "CampaignRule",
    "Client",
    "CommunicationChannel",
    "CommunicationRecord",
    "CommunicationStatus",
    "CooldownBasis",
    "CouponType",
    "Enrollment",
    "EnrollmentStatus",
    "EvaluationOutcome",
    "ExpiryLot",
    "LedgerTransaction",
    "LedgerTransactionType",
    "LotConsumption",
    "LoyaltyTier",
    "Member",
    "MembershipProgram",
    "MessageTemplate",
    "Reward",
    "RewardAllocation",
    "RewardAllocationStatus",
    "RuleEvaluation",
    "RuleType",
    "Voucher",
]
