"""Typed trigger conditions, one model per rule type."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Annotated, Any, Callable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from rewardloop_api.models.campaign import RuleType
from rewardloop_api.models.tenant import Member

from .events import TriggerEvent


class _Conditions(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class OrderExclusions(_Conditions):
    exclude_refunded: bool = False
    exclude_cancelled: bool = False
    exclude_test_orders: bool = False


class OrderValueConditions(_Conditions):
    rule_type: Literal["order_value"] = "order_value"
    min_order_value: float | None = Field(default=None, ge=0)
    max_order_value: float | None = Field(default=None, ge=0)
    coupon_code: str | None = None
    shipping_countries: list[str] = Field(default_factory=list)
    first_order_only: bool = False
    exclusions: OrderExclusions = Field(default_factory=OrderExclusions)


class OrderCountConditions(_Conditions):
    rule_type: Literal["order_count"] = "order_count"
    min_order_count: int = Field(default=1, ge=1)
    max_order_count: int | None = Field(default=None, ge=1)
    exclusions: OrderExclusions = Field(default_factory=OrderExclusions)


class SignupConditions(_Conditions):
    rule_type: Literal["signup"] = "signup"
    sources: list[str] = Field(default_factory=list)
    require_email: bool = False


class BirthdayConditions(_Conditions):
    rule_type: Literal["birthday"] = "birthday"
    days_before: int = Field(default=0, ge=0, le=31)


class ReferralConditions(_Conditions):
    rule_type: Literal["referral"] = "referral"
    referral_discount_type: Literal["percent", "fixed"] = "percent"
    referral_discount_value: float = Field(default=0, ge=0)
    min_order_value: float | None = Field(default=None, ge=0)
    max_referrals_per_day: int | None = Field(default=None, ge=1)
    require_purchase: bool = False


class CustomEventConditions(_Conditions):
    rule_type: Literal["custom_event"] = "custom_event"
    event_name: str = Field(..., min_length=1)
    property_filters: dict[str, Any] = Field(default_factory=dict)


class SocialFollowConditions(_Conditions):
    rule_type: Literal["social_follow"] = "social_follow"
    platforms: list[str] = Field(default_factory=list)


class ProfileCompleteConditions(_Conditions):
    rule_type: Literal["profile_complete"] = "profile_complete"
    required_fields: list[str] = Field(default_factory=lambda: ["email", "full_name", "birth_date"])


class ReviewConditions(_Conditions):
    rule_type: Literal["review"] = "review"
    min_rating: int | None = Field(default=None, ge=1, le=5)
    min_length: int | None = Field(default=None, ge=1)
    require_photo: bool = False


TriggerConditions = Annotated[
    Union[
        OrderValueConditions,
        OrderCountConditions,
        SignupConditions,
        BirthdayConditions,
        ReferralConditions,
        CustomEventConditions,
        SocialFollowConditions,
        ProfileCompleteConditions,
        ReviewConditions,
    ],
    Field(discriminator="rule_type"),
]

_ADAPTER: TypeAdapter[TriggerConditions] = TypeAdapter(TriggerConditions)


class InvalidConditionsError(ValueError):
    pass


def parse_conditions(rule_type: RuleType, raw: Mapping[str, Any] | None) -> TriggerConditions:
    payload = dict(raw or {})
    payload["rule_type"] = rule_type.value
    try:
        return _ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise InvalidConditionsError(str(exc)) from exc


@dataclass
class ConditionContext:
    """Inputs a condition check may read."""

    event: TriggerEvent
    member: Member
    referred_member: Member | None = None


@dataclass
class ConditionCheck:
    matched: bool
    reason: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **details: Any) -> "ConditionCheck":
        return cls(matched=True, details=details)

    @classmethod
    def fail(cls, reason: str, **details: Any) -> "ConditionCheck":
        return cls(matched=False, reason=reason, details=details)


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _check_exclusions(exclusions: OrderExclusions, payload: Mapping[str, Any]) -> ConditionCheck | None:
    status = str(payload.get("status") or "").lower()
    financial_status = str(payload.get("financial_status") or "").lower()
    if exclusions.exclude_refunded and ("refunded" in (status, financial_status) or payload.get("refunded")):
        return ConditionCheck.fail("excluded_refunded")
    if exclusions.exclude_cancelled and (status == "cancelled" or payload.get("cancelled_at")):
        return ConditionCheck.fail("excluded_cancelled")
    if exclusions.exclude_test_orders and payload.get("is_test"):
        return ConditionCheck.fail("excluded_test_order")
    return None


def _match_order_value(conditions: OrderValueConditions, context: ConditionContext) -> ConditionCheck:
    payload = context.event.payload
    excluded = _check_exclusions(conditions.exclusions, payload)
    if excluded is not None:
        return excluded

    order_value = _as_float(payload.get("order_value"))
    if order_value is None:
        return ConditionCheck.fail("missing_order_value")
    if conditions.min_order_value is not None and order_value < conditions.min_order_value:
        return ConditionCheck.fail("order_value_below_minimum", order_value=order_value)
    if conditions.max_order_value is not None and order_value > conditions.max_order_value:
        return ConditionCheck.fail("order_value_above_maximum", order_value=order_value)
    if conditions.coupon_code:
        used = str(payload.get("coupon_code") or "").strip().upper()
        if used != conditions.coupon_code.strip().upper():
            return ConditionCheck.fail("coupon_code_mismatch")
    if conditions.shipping_countries:
        country = str(payload.get("shipping_country") or "").upper()
        allowed = {item.upper() for item in conditions.shipping_countries}
        if country not in allowed:
            return ConditionCheck.fail("shipping_country_not_allowed", shipping_country=country or None)
    if conditions.first_order_only and _as_int(payload.get("order_count")) not in (None, 1):
        return ConditionCheck.fail("not_first_order")
    return ConditionCheck.ok(order_value=order_value)


def _match_order_count(conditions: OrderCountConditions, context: ConditionContext) -> ConditionCheck:
    payload = context.event.payload
    excluded = _check_exclusions(conditions.exclusions, payload)
    if excluded is not None:
        return excluded

    order_count = _as_int(payload.get("order_count"))
    if order_count is None:
        return ConditionCheck.fail("missing_order_count")
    if order_count < conditions.min_order_count:
        return ConditionCheck.fail("order_count_below_minimum", order_count=order_count)
    if conditions.max_order_count is not None and order_count > conditions.max_order_count:
        return ConditionCheck.fail("order_count_above_maximum", order_count=order_count)
    return ConditionCheck.ok(order_count=order_count)


def _match_signup(conditions: SignupConditions, context: ConditionContext) -> ConditionCheck:
    source = str(context.event.payload.get("source") or "").lower()
    if conditions.sources and source not in {item.lower() for item in conditions.sources}:
        return ConditionCheck.fail("signup_source_not_allowed", source=source or None)
    if conditions.require_email and not context.member.email:
        return ConditionCheck.fail("missing_email")
    return ConditionCheck.ok(source=source or None)


def birthday_in_year(birth_date: date, year: int) -> date:
    try:
        return birth_date.replace(year=year)
    except ValueError:
        # 29 February outside leap years.
        return date(year, 2, 28)


def _match_birthday(conditions: BirthdayConditions, context: ConditionContext) -> ConditionCheck:
    birth_date = context.member.birth_date
    if birth_date is None:
        return ConditionCheck.fail("missing_birth_date")
    target = context.event.timestamp.date() + timedelta(days=conditions.days_before)
    if birthday_in_year(birth_date, target.year) != target:
        return ConditionCheck.fail("not_birthday_window", birth_date=birth_date.isoformat())
    return ConditionCheck.ok(birthday=target.isoformat())


def _match_referral(conditions: ReferralConditions, context: ConditionContext) -> ConditionCheck:
    referred = context.referred_member
    if referred is None:
        return ConditionCheck.fail("missing_referred_member")
    if referred.id == context.member.id:
        return ConditionCheck.fail("self_referral")

    order_value = _as_float(context.event.payload.get("order_value"))
    if conditions.require_purchase and order_value is None:
        return ConditionCheck.fail("purchase_required")
    if conditions.min_order_value is not None:
        if order_value is None or order_value < conditions.min_order_value:
            return ConditionCheck.fail("order_value_below_minimum", order_value=order_value)

    discount = referral_discount(conditions, order_value)
    return ConditionCheck.ok(referred_member_id=str(referred.id), referral_discount=discount)


def referral_discount(conditions: ReferralConditions, order_value: float | None) -> dict[str, Any]:
    """Discount granted to the referred party."""

    amount: float | None = None
    if conditions.referral_discount_type == "fixed":
        amount = conditions.referral_discount_value
        if order_value is not None:
            amount = min(amount, order_value)
    elif order_value is not None:
        amount = round(order_value * conditions.referral_discount_value / 100, 2)
    return {
        "type": conditions.referral_discount_type,
        "value": conditions.referral_discount_value,
        "amount": amount,
    }


def _match_custom_event(conditions: CustomEventConditions, context: ConditionContext) -> ConditionCheck:
    payload = context.event.payload
    if str(payload.get("event_name") or "") != conditions.event_name:
        return ConditionCheck.fail("event_name_mismatch")
    properties = payload.get("properties") or {}
    for key, expected in conditions.property_filters.items():
        if properties.get(key) != expected:
            return ConditionCheck.fail("property_mismatch", property=key)
    return ConditionCheck.ok(event_name=conditions.event_name)


def _match_social_follow(conditions: SocialFollowConditions, context: ConditionContext) -> ConditionCheck:
    platform = str(context.event.payload.get("platform") or "").lower()
    if conditions.platforms and platform not in {item.lower() for item in conditions.platforms}:
        return ConditionCheck.fail("platform_not_allowed", platform=platform or None)
    return ConditionCheck.ok(platform=platform or None)


def _match_profile_complete(conditions: ProfileCompleteConditions, context: ConditionContext) -> ConditionCheck:
    member = context.member
    attributes = member.attributes or {}
    missing = [
        name
        for name in conditions.required_fields
        if not getattr(member, name, None) and not attributes.get(name)
    ]
    if missing:
        return ConditionCheck.fail("profile_incomplete", missing_fields=missing)
    return ConditionCheck.ok()


def _match_review(conditions: ReviewConditions, context: ConditionContext) -> ConditionCheck:
    payload = context.event.payload
    rating = _as_int(payload.get("rating"))
    if conditions.min_rating is not None and (rating is None or rating < conditions.min_rating):
        return ConditionCheck.fail("rating_below_minimum", rating=rating)
    text = str(payload.get("text") or "")
    if conditions.min_length is not None and len(text.strip()) < conditions.min_length:
        return ConditionCheck.fail("review_too_short", length=len(text.strip()))
    if conditions.require_photo and not payload.get("has_photo"):
        return ConditionCheck.fail("photo_required")
    return ConditionCheck.ok(rating=rating)


_MATCHERS: dict[type, Callable[[Any, ConditionContext], ConditionCheck]] = {
    OrderValueConditions: _match_order_value,
    OrderCountConditions: _match_order_count,
    SignupConditions: _match_signup,
    BirthdayConditions: _match_birthday,
    ReferralConditions: _match_referral,
    CustomEventConditions: _match_custom_event,
    SocialFollowConditions: _match_social_follow,
    ProfileCompleteConditions: _match_profile_complete,
    ReviewConditions: _match_review,
}

assert len(_MATCHERS) == len(RuleType), "every rule type needs a condition matcher"


def match_conditions(conditions: TriggerConditions, context: ConditionContext) -> ConditionCheck:
    matcher = _MATCHERS[type(conditions)]
    return matcher(conditions, context)


__all__ = [
    "BirthdayConditions",
    "ConditionCheck",
    "ConditionContext",
    "CustomEventConditions",
    "InvalidConditionsError",
    "OrderCountConditions",
    "OrderExclusions",
    "OrderValueConditions",
    "ProfileCompleteConditions",
    "ReferralConditions",
    "ReviewConditions",
    "SignupConditions",
    "SocialFollowConditions",
    "TriggerConditions",
    "birthday_in_year",
    "match_conditions",
    "parse_conditions",
    "referral_discount",
]
