"""Campaign rule engine: event in, per-rule decisions out."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import as_utc, start_of_day, utcnow
from rewardloop_api.core.settings import settings
from rewardloop_api.models.campaign import (
    CampaignRule,
    CooldownBasis,
    Enrollment,
    EvaluationOutcome,
    RuleEvaluation,
    RuleType,
)
from rewardloop_api.models.communication import CommunicationChannel, CommunicationRecord, MessageTemplate
from rewardloop_api.models.reward import Reward, RewardAllocation, RewardAllocationStatus
from rewardloop_api.models.tenant import Client, Member, MembershipProgram
from rewardloop_api.observability.engine import get_engine_store
from rewardloop_api.services.communications.service import CommunicationService
from rewardloop_api.services.communications.templates import (
    DEFAULT_BODY,
    DEFAULT_SUBJECT,
    FALLBACK_REWARD_TEXT,
    render_text,
)
from rewardloop_api.services.errors import CapExceededError, EventValidationError
from rewardloop_api.services.ledger import PointsLedgerService
from rewardloop_api.services.members import MemberService
from rewardloop_api.services.rewards import VoucherIssuer

from .cache import RuleCache, RuleSnapshot
from .conditions import (
    ConditionContext,
    InvalidConditionsError,
    ReferralConditions,
    match_conditions,
    parse_conditions,
)
from .events import TriggerEvent

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]

_PROFILE_KEYS = ("email", "phone", "full_name", "birth_date")
CAP_EXCEEDED = "cap_exceeded"


@dataclass
class RuleDecision:
    """Result of evaluating one rule against one event."""

    rule_id: UUID
    rule_name: str
    outcome: EvaluationOutcome
    reason: str | None = None
    member_id: UUID | None = None
    enrollment_id: UUID | None = None
    points_awarded: int = 0
    transaction_id: UUID | None = None
    allocation_id: UUID | None = None
    voucher_code: str | None = None
    communication_id: UUID | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def awarded(self) -> bool:
        return self.outcome == EvaluationOutcome.AWARDED

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule_id": str(self.rule_id),
            "rule_name": self.rule_name,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "member_id": str(self.member_id) if self.member_id else None,
            "enrollment_id": str(self.enrollment_id) if self.enrollment_id else None,
            "points_awarded": self.points_awarded,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "allocation_id": str(self.allocation_id) if self.allocation_id else None,
            "voucher_code": self.voucher_code,
            "communication_id": str(self.communication_id) if self.communication_id else None,
            "details": self.details,
        }


class _RuleHalt(Exception):
    """Stops a rule early with a non-award outcome."""

    def __init__(
        self,
        outcome: EvaluationOutcome,
        reason: str,
        *,
        member_id: UUID | None = None,
        enrollment_id: UUID | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(reason)
        self.outcome = outcome
        self.reason = reason
        self.member_id = member_id
        self.enrollment_id = enrollment_id
        self.details = dict(details or {})

    def to_decision(self, rule: RuleSnapshot) -> RuleDecision:
        return RuleDecision(
            rule_id=rule.id,
            rule_name=rule.name,
            outcome=self.outcome,
            reason=self.reason,
            member_id=self.member_id,
            enrollment_id=self.enrollment_id,
            details=self.details,
        )


class CampaignRuleEngine:
    """Evaluates a tenant's active rules against an incoming event.

    Candidates run in priority order (ties by creation order), each inside its
    own transaction. Enrollment, the capped counter increment, the points
    posting, the reward allocation and the queued communication commit
    together or not at all; a failing rule never affects the others.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        rule_cache: RuleCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._cache = rule_cache or RuleCache(session_factory)
        self._observability = get_engine_store()

    @property
    def rule_cache(self) -> RuleCache:
        return self._cache

    async def evaluate(self, event: TriggerEvent) -> list[RuleDecision]:
        rules = await self._cache.get(event.client_id)
        # Campaign windows follow the processing clock, like cooldowns; the
        # event timestamp only feeds condition matching.
        moment = utcnow()
        candidates = [rule for rule in rules if event.triggers(rule.rule_type) and rule.in_window(moment)]
        if not candidates:
            logger.info(
                "No candidate rules for event",
                client_id=str(event.client_id),
                event_type=event.event_type.value,
                reference_id=event.reference_id,
            )
            return []

        member_id = await self._prepare_member(event)
        decisions: list[RuleDecision] = []
        for rule in candidates:
            decisions.append(await self._run_rule(rule, event, member_id))

        summary = {
            "client_id": str(event.client_id),
            "event_type": event.event_type.value,
            "reference_id": event.reference_id,
            "candidates": len(candidates),
            "awarded": sum(1 for decision in decisions if decision.awarded),
        }
        logger.bind(summary=summary).info("Event evaluated")
        return decisions

    async def _prepare_member(self, event: TriggerEvent) -> UUID:
        session = await self._ensure_session()
        async with session as managed_session:
            client = await managed_session.get(Client, event.client_id)
            if client is None:
                raise EventValidationError(f"Unknown client {event.client_id}")
            service = MemberService(managed_session)
            member = await service.ensure_member(
                event.client_id,
                event.member_identifier,
                profile=_profile_from_payload(event.payload),
            )
            member_id = member.id
            await managed_session.commit()
        return member_id

    async def _run_rule(self, rule: RuleSnapshot, event: TriggerEvent, member_id: UUID) -> RuleDecision:
        try:
            decision = await self._evaluate_in_session(rule, event, member_id)
        except Exception as exc:  # one rule failing must not abort the rest
            logger.exception(
                "Rule evaluation failed",
                rule_id=str(rule.id),
                reference_id=event.reference_id,
                error=str(exc),
            )
            decision = RuleDecision(
                rule_id=rule.id,
                rule_name=rule.name,
                outcome=EvaluationOutcome.FAILED,
                reason=type(exc).__name__,
                member_id=member_id,
                details={"error": str(exc)},
            )
            await self._record_failure(rule, event, decision)

        self._observability.record_rule_outcome(decision.outcome.value, decision.reason)
        logger.info(
            "Rule evaluated",
            rule_id=str(rule.id),
            rule_type=rule.rule_type.value,
            outcome=decision.outcome.value,
            reason=decision.reason,
            reference_id=event.reference_id,
        )
        return decision

    async def _evaluate_in_session(self, rule: RuleSnapshot, event: TriggerEvent, member_id: UUID) -> RuleDecision:
        session = await self._ensure_session()
        async with session as managed_session:
            try:
                decision = await self._apply_rule(managed_session, rule, event, member_id)
            except _RuleHalt as halt:
                await managed_session.rollback()
                decision = halt.to_decision(rule)
            managed_session.add(_evaluation_row(rule, event, decision))
            await managed_session.commit()
            return decision

    async def _apply_rule(
        self,
        db: AsyncSession,
        rule: RuleSnapshot,
        event: TriggerEvent,
        member_id: UUID,
    ) -> RuleDecision:
        member = await db.get(Member, member_id)
        if member is None:
            raise _RuleHalt(EvaluationOutcome.SKIPPED, "member_missing")

        target = member
        referred: Member | None = None
        if rule.rule_type == RuleType.REFERRAL:
            referrer = await self._resolve_referrer(db, event)
            if referrer is None:
                raise _RuleHalt(EvaluationOutcome.REJECTED, "referrer_not_found", member_id=member.id)
            target, referred = referrer, member

        # Held until commit so enrollment history reads see every earlier award.
        # Lock order is member, then rule row, then voucher codes.
        target = await _lock_member(db, target.id)

        idempotency_key = event.reference_id
        existing = (
            await db.execute(
                select(Enrollment.id).where(
                    Enrollment.member_id == target.id,
                    Enrollment.rule_id == rule.id,
                    Enrollment.idempotency_key == idempotency_key,
                )
            )
        ).scalar_one_or_none()
        if existing is not None:
            raise _RuleHalt(
                EvaluationOutcome.DUPLICATE,
                "already_enrolled",
                member_id=target.id,
                enrollment_id=existing,
            )

        state = (
            await db.execute(
                select(
                    CampaignRule.is_active,
                    CampaignRule.current_enrollments,
                    CampaignRule.max_enrollments,
                ).where(CampaignRule.id == rule.id)
            )
        ).one_or_none()
        if state is None or not state.is_active:
            raise _RuleHalt(EvaluationOutcome.SKIPPED, "rule_inactive", member_id=target.id)
        if state.max_enrollments is not None and state.current_enrollments >= state.max_enrollments:
            raise _RuleHalt(
                EvaluationOutcome.SKIPPED,
                CAP_EXCEEDED,
                member_id=target.id,
                details={"max_enrollments": state.max_enrollments},
            )

        try:
            conditions = parse_conditions(rule.rule_type, rule.trigger_conditions)
        except InvalidConditionsError as exc:
            raise _RuleHalt(
                EvaluationOutcome.SKIPPED,
                "invalid_conditions",
                member_id=target.id,
                details={"error": str(exc)},
            ) from exc

        now = utcnow()
        await self._check_member_limits(db, rule, target, now, conditions)

        check = match_conditions(conditions, ConditionContext(event=event, member=target, referred_member=referred))
        if not check.matched:
            raise _RuleHalt(
                EvaluationOutcome.REJECTED,
                "conditions_not_met",
                member_id=target.id,
                details={"check": check.reason, **check.details},
            )

        enrollment = Enrollment(
            client_id=rule.client_id,
            member_id=target.id,
            rule_id=rule.id,
            program_id=rule.program_id,
            reward_id=rule.reward_id,
            referrer_member_id=target.id if referred is not None else None,
            referred_member_id=referred.id if referred is not None else None,
            idempotency_key=idempotency_key,
            metadata_json={"event_type": event.event_type.value, "conditions": check.details},
            created_at=now,
        )
        db.add(enrollment)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise _RuleHalt(EvaluationOutcome.DUPLICATE, "already_enrolled", member_id=target.id) from exc

        try:
            await _claim_enrollment_slot(db, rule.id, capped=state.max_enrollments is not None)
        except CapExceededError as exc:
            raise _RuleHalt(EvaluationOutcome.SKIPPED, CAP_EXCEEDED, member_id=target.id) from exc

        award_reference = f"{event.reference_id}:{rule.id}"
        decision = RuleDecision(
            rule_id=rule.id,
            rule_name=rule.name,
            outcome=EvaluationOutcome.AWARDED,
            member_id=target.id,
            enrollment_id=enrollment.id,
            details=dict(check.details),
        )

        if rule.points_reward > 0:
            ledger = PointsLedgerService(db, default_expiry_days=settings.ledger_default_expiry_days)
            transaction = await ledger.earn(
                target.id,
                rule.points_reward,
                award_reference,
                expiry_days=rule.points_expiry_days,
                description=rule.name,
                metadata={"rule_id": str(rule.id), "event_type": event.event_type.value},
            )
            enrollment.points_awarded = rule.points_reward
            decision.points_awarded = rule.points_reward
            decision.transaction_id = transaction.id

        allocation: RewardAllocation | None = None
        if rule.reward_id is not None:
            allocation = await VoucherIssuer(db).issue(
                rule.reward_id,
                target.id,
                award_reference,
                rule_id=rule.id,
                enrollment_id=enrollment.id,
            )
            decision.allocation_id = allocation.id
            decision.voucher_code = allocation.code
            if allocation.status == RewardAllocationStatus.FAILED:
                decision.reason = allocation.failure_reason

        communication = await self._enqueue_communication(db, rule, target, enrollment, allocation)
        if communication is not None:
            decision.communication_id = communication.id
        await db.flush()
        return decision

    async def _check_member_limits(
        self,
        db: AsyncSession,
        rule: RuleSnapshot,
        member: Member,
        now,
        conditions,
    ) -> None:
        history = select(Enrollment).where(Enrollment.member_id == member.id, Enrollment.rule_id == rule.id)

        if rule.max_times_per_customer is not None:
            count = (
                await db.execute(select(func.count()).select_from(history.subquery()))
            ).scalar_one()
            if count >= rule.max_times_per_customer:
                raise _RuleHalt(
                    EvaluationOutcome.SKIPPED,
                    "max_times_per_customer",
                    member_id=member.id,
                    details={"enrollments": count},
                )

        if rule.cooldown_days:
            cooldown = timedelta(days=rule.cooldown_days)
            if rule.cooldown_basis == CooldownBasis.WINDOW_START:
                anchor = rule.start_date or rule.created_at
                elapsed = max(now - anchor, timedelta(0))
                window_start = anchor + cooldown * (elapsed // cooldown)
                in_window = (
                    await db.execute(
                        select(func.count())
                        .select_from(Enrollment)
                        .where(
                            Enrollment.member_id == member.id,
                            Enrollment.rule_id == rule.id,
                            Enrollment.created_at >= window_start,
                        )
                    )
                ).scalar_one()
                if in_window:
                    raise _RuleHalt(
                        EvaluationOutcome.SKIPPED,
                        "cooldown",
                        member_id=member.id,
                        details={"window_start": window_start.isoformat()},
                    )
            else:
                last = (
                    await db.execute(
                        select(func.max(Enrollment.created_at)).where(
                            Enrollment.member_id == member.id,
                            Enrollment.rule_id == rule.id,
                        )
                    )
                ).scalar_one_or_none()
                last = as_utc(last)
                if last is not None and now < last + cooldown:
                    raise _RuleHalt(
                        EvaluationOutcome.SKIPPED,
                        "cooldown",
                        member_id=member.id,
                        details={"eligible_at": (last + cooldown).isoformat()},
                    )

        if isinstance(conditions, ReferralConditions) and conditions.max_referrals_per_day:
            today = (
                await db.execute(
                    select(func.count())
                    .select_from(Enrollment)
                    .where(
                        Enrollment.member_id == member.id,
                        Enrollment.rule_id == rule.id,
                        Enrollment.created_at >= start_of_day(now),
                    )
                )
            ).scalar_one()
            if today >= conditions.max_referrals_per_day:
                raise _RuleHalt(
                    EvaluationOutcome.SKIPPED,
                    "daily_referral_limit",
                    member_id=member.id,
                    details={"referrals_today": today},
                )

    async def _resolve_referrer(self, db: AsyncSession, event: TriggerEvent) -> Member | None:
        members = MemberService(db)
        if event.referral_code:
            return await members.find_by_referral_code(event.client_id, event.referral_code)
        identifier = event.payload.get("referrer_identifier")
        if identifier:
            return await members.find_member(event.client_id, str(identifier))
        return None

    async def _enqueue_communication(
        self,
        db: AsyncSession,
        rule: RuleSnapshot,
        member: Member,
        enrollment: Enrollment,
        allocation: RewardAllocation | None,
    ) -> CommunicationRecord | None:
        template: MessageTemplate | None = None
        channel = rule.channel
        if rule.template_id is not None:
            template = await db.get(MessageTemplate, rule.template_id)
            if template is not None and channel is None:
                channel = template.channel
        if channel is None:
            return None

        client = await db.get(Client, rule.client_id)
        if client is None or channel.value in settings.disabled_channels or not client.channel_enabled(channel.value):
            logger.info("Channel disabled for client", client_id=str(rule.client_id), channel=channel.value)
            return None

        recipient = member.email if channel == CommunicationChannel.EMAIL else member.phone
        if not recipient:
            logger.info("Member has no recipient for channel", member_id=str(member.id), channel=channel.value)
            return None

        program_name = rule.name
        if rule.program_id is not None:
            program = await db.get(MembershipProgram, rule.program_id)
            if program is not None:
                program_name = program.name

        support = client.support_contact or client.name
        fallback = False
        link = settings.rewards_link_base_url
        validity = "no expiry"
        if allocation is not None and allocation.status == RewardAllocationStatus.ISSUED:
            reward = await db.get(Reward, allocation.reward_id)
            reward_text = f"{reward.title if reward else 'your reward'} (code {allocation.code})"
            link = allocation.redemption_link or link
            if allocation.valid_until is not None:
                validity = f"until {as_utc(allocation.valid_until).date().isoformat()}"
        elif allocation is not None:
            reward_text = render_text(FALLBACK_REWARD_TEXT, {"support": support}) or ""
            fallback = True
        else:
            reward_text = f"{rule.points_reward} points"
            if rule.points_expiry_days:
                validity = f"for {rule.points_expiry_days} days"

        variables = {
            "name": member.display_name,
            "client": client.name,
            "program": program_name,
            "link": link,
            "validity": validity,
            "reward": reward_text,
            "support": support,
        }
        return await CommunicationService(db).enqueue(
            client_id=rule.client_id,
            member_id=member.id,
            channel=channel,
            recipient=recipient,
            template_subject=template.subject if template is not None else DEFAULT_SUBJECT,
            template_body=template.body if template is not None else DEFAULT_BODY,
            variables=variables,
            rule_id=rule.id,
            enrollment_id=enrollment.id,
            allocation_id=allocation.id if allocation is not None else None,
            template_id=template.id if template is not None else None,
            personalized_url=link,
            dedupe_key=f"enrollment:{enrollment.id}",
            fallback_render=fallback,
        )

    async def _record_failure(self, rule: RuleSnapshot, event: TriggerEvent, decision: RuleDecision) -> None:
        try:
            session = await self._ensure_session()
            async with session as managed_session:
                managed_session.add(_evaluation_row(rule, event, decision))
                await managed_session.commit()
        except Exception as exc:  # the failure itself is already logged
            logger.exception("Unable to record failed rule evaluation", rule_id=str(rule.id), error=str(exc))

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


async def _lock_member(db: AsyncSession, member_id: UUID) -> Member:
    stmt = (
        select(Member)
        .where(Member.id == member_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    member = (await db.execute(stmt)).scalar_one_or_none()
    if member is None:
        raise _RuleHalt(EvaluationOutcome.SKIPPED, "member_missing")
    return member


async def _claim_enrollment_slot(db: AsyncSession, rule_id: UUID, *, capped: bool) -> None:
    """Compare-and-increment ``current_enrollments`` against the cap."""

    increment = update(CampaignRule).where(CampaignRule.id == rule_id)
    if capped:
        increment = increment.where(CampaignRule.current_enrollments < CampaignRule.max_enrollments)
    counted = await db.execute(
        increment.values(current_enrollments=CampaignRule.current_enrollments + 1).execution_options(
            synchronize_session=False
        )
    )
    if counted.rowcount == 0:
        raise CapExceededError(rule_id)


def _evaluation_row(rule: RuleSnapshot, event: TriggerEvent, decision: RuleDecision) -> RuleEvaluation:
    return RuleEvaluation(
        client_id=rule.client_id,
        rule_id=rule.id,
        member_id=decision.member_id,
        event_type=event.event_type.value,
        reference_id=event.reference_id,
        outcome=decision.outcome,
        reason=decision.reason,
        details=decision.details or None,
        created_at=utcnow(),
    )


def _profile_from_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    source = payload.get("profile") if isinstance(payload.get("profile"), Mapping) else payload
    profile = {key: source.get(key) for key in _PROFILE_KEYS if source.get(key) not in (None, "")}
    if "full_name" not in profile and source.get("name"):
        profile["full_name"] = source.get("name")
    attributes = source.get("attributes")
    if isinstance(attributes, Mapping):
        profile["attributes"] = dict(attributes)
    return profile


__all__ = ["CampaignRuleEngine", "RuleDecision"]
