"""Trigger events accepted by the rule engine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rewardloop_api.core.clock import as_utc, utcnow
from rewardloop_api.models.campaign import RuleType
from rewardloop_api.services.errors import EventValidationError


class EventType(str, Enum):
    ORDER_PLACED = "order_placed"
    SIGNUP = "signup"
    REFERRAL = "referral"
    BIRTHDAY = "birthday"
    CUSTOM_EVENT = "custom_event"
    SOCIAL_FOLLOW = "social_follow"
    PROFILE_UPDATED = "profile_updated"
    REVIEW_SUBMITTED = "review_submitted"


# Rule families each event can trigger. Referral rules also fire on orders and
# signups that carry a referral code.
EVENT_RULE_TYPES: dict[EventType, tuple[RuleType, ...]] = {
    EventType.ORDER_PLACED: (RuleType.ORDER_VALUE, RuleType.ORDER_COUNT, RuleType.REFERRAL),
    EventType.SIGNUP: (RuleType.SIGNUP, RuleType.REFERRAL, RuleType.PROFILE_COMPLETE),
    EventType.REFERRAL: (RuleType.REFERRAL,),
    EventType.BIRTHDAY: (RuleType.BIRTHDAY,),
    EventType.CUSTOM_EVENT: (RuleType.CUSTOM_EVENT,),
    EventType.SOCIAL_FOLLOW: (RuleType.SOCIAL_FOLLOW,),
    EventType.PROFILE_UPDATED: (RuleType.PROFILE_COMPLETE,),
    EventType.REVIEW_SUBMITTED: (RuleType.REVIEW,),
}


class TriggerEvent(BaseModel):
    """External event evaluated against a tenant's rules."""

    model_config = ConfigDict(frozen=True)

    event_type: EventType
    client_id: UUID
    member_identifier: str = Field(..., min_length=1)
    reference_id: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime | None = None

    @field_validator("member_identifier", "reference_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned

    @property
    def timestamp(self) -> datetime:
        return as_utc(self.occurred_at) or utcnow()

    @property
    def referral_code(self) -> str | None:
        code = self.payload.get("referral_code")
        return str(code) if code else None

    def triggers(self, rule_type: RuleType) -> bool:
        if rule_type not in EVENT_RULE_TYPES.get(self.event_type, ()):
            return False
        if rule_type == RuleType.REFERRAL and self.event_type != EventType.REFERRAL:
            return bool(self.referral_code or self.payload.get("referrer_identifier"))
        return True

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "TriggerEvent":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise EventValidationError(str(exc)) from exc


__all__ = ["EVENT_RULE_TYPES", "EventType", "TriggerEvent"]
