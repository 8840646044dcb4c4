"""Campaign rule evaluation."""

from .cache import RuleCache, RuleSnapshot
from .conditions import (
    ConditionCheck,
    ConditionContext,
    InvalidConditionsError,
    TriggerConditions,
    match_conditions,
    parse_conditions,
    referral_discount,
)
from .engine import CampaignRuleEngine, RuleDecision
from .events import EVENT_RULE_TYPES, EventType, TriggerEvent

__all__ = [
    "CampaignRuleEngine",
    "ConditionCheck",
    "ConditionContext",
    "EVENT_RULE_TYPES",
    "EventType",
    "InvalidConditionsError",
    "RuleCache",
    "RuleDecision",
    "RuleSnapshot",
    "TriggerConditions",
    "TriggerEvent",
    "match_conditions",
    "parse_conditions",
    "referral_discount",
]
