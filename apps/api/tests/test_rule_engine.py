"""Campaign rule engine evaluation, enrollment caps and award side effects."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from rewardloop_api.core.clock import utcnow
from rewardloop_api.models.campaign import (
    CampaignRule,
    CooldownBasis,
    Enrollment,
    EvaluationOutcome,
    RuleEvaluation,
    RuleType,
)
from rewardloop_api.models.communication import CommunicationChannel, CommunicationRecord, CommunicationStatus
from rewardloop_api.models.ledger import LedgerTransaction, LedgerTransactionType
from rewardloop_api.models.reward import RewardAllocation, RewardAllocationStatus
from rewardloop_api.models.tenant import Member
from rewardloop_api.services.rewards import VoucherIssuer
from rewardloop_api.services.rules import CampaignRuleEngine, EventType, RuleCache, TriggerEvent


def _engine(session_factory, ttl_seconds: float = 0) -> CampaignRuleEngine:
    return CampaignRuleEngine(session_factory, rule_cache=RuleCache(session_factory, ttl_seconds=ttl_seconds))


def _order(client, identifier: str, reference_id: str, order_value: float = 600, **payload) -> TriggerEvent:
    return TriggerEvent(
        event_type=EventType.ORDER_PLACED,
        client_id=client.id,
        member_identifier=identifier,
        reference_id=reference_id,
        payload={"order_value": order_value, **payload},
    )


async def _count(session, column, *criteria) -> int:
    return (await session.execute(select(func.count(column)).where(*criteria))).scalar_one()


@pytest.mark.asyncio
async def test_qualifying_order_awards_points_once(session_factory, seed) -> None:
    client = await seed.client()
    await seed.member(client, "cust-1", email="ada@example.com", full_name="Ada")
    rule = await seed.rule(
        client,
        RuleType.ORDER_VALUE,
        conditions={"min_order_value": 500},
        points=100,
        channel=CommunicationChannel.EMAIL,
    )
    engine = _engine(session_factory)

    [decision] = await engine.evaluate(_order(client, "cust-1", "order-1001", 600))

    assert decision.outcome == EvaluationOutcome.AWARDED
    assert decision.points_awarded == 100
    assert decision.communication_id is not None

    [replay] = await engine.evaluate(_order(client, "cust-1", "order-1001", 600))
    assert replay.outcome == EvaluationOutcome.DUPLICATE
    assert replay.reason == "already_enrolled"
    assert replay.enrollment_id == decision.enrollment_id

    async with session_factory() as session:
        member = (await session.execute(select(Member).where(Member.external_id == "cust-1"))).scalar_one()
        assert member.points_balance == 100
        transactions = (
            await session.execute(select(LedgerTransaction).where(LedgerTransaction.member_id == member.id))
        ).scalars().all()
        assert [(tx.transaction_type, tx.points_amount) for tx in transactions] == [(LedgerTransactionType.EARN, 100)]
        assert transactions[0].reference_id == f"order-1001:{rule.id}"
        assert await _count(session, Enrollment.id, Enrollment.rule_id == rule.id) == 1

        record = (await session.execute(select(CommunicationRecord))).scalar_one()
        assert record.status == CommunicationStatus.PENDING
        assert record.recipient == "ada@example.com"
        assert "Hi Ada" in record.body
        assert "100 points" in record.body

        stored_rule = await session.get(CampaignRule, rule.id)
        assert stored_rule.current_enrollments == 1

        outcomes = (
            await session.execute(select(RuleEvaluation.outcome).order_by(RuleEvaluation.created_at))
        ).scalars().all()
        assert outcomes == [EvaluationOutcome.AWARDED, EvaluationOutcome.DUPLICATE]


@pytest.mark.asyncio
async def test_order_below_minimum_is_rejected(session_factory, seed) -> None:
    client = await seed.client()
    await seed.rule(client, RuleType.ORDER_VALUE, conditions={"min_order_value": 500}, points=100)

    [decision] = await _engine(session_factory).evaluate(_order(client, "cust-2", "order-1", 120))

    assert decision.outcome == EvaluationOutcome.REJECTED
    assert decision.reason == "conditions_not_met"
    assert decision.details["check"] == "order_value_below_minimum"

    async with session_factory() as session:
        assert await _count(session, Enrollment.id) == 0
        assert await _count(session, LedgerTransaction.id) == 0
        # The member is still registered from the event identity.
        assert await _count(session, Member.id, Member.external_id == "cust-2") == 1


@pytest.mark.asyncio
async def test_concurrent_events_cannot_exceed_cap(session_factory, seed) -> None:
    client = await seed.client()
    rule = await seed.rule(client, RuleType.ORDER_VALUE, points=10, max_enrollments=1)
    engine = _engine(session_factory, ttl_seconds=60)

    results = await asyncio.gather(
        engine.evaluate(_order(client, "racer-a", "order-a")),
        engine.evaluate(_order(client, "racer-b", "order-b")),
    )
    decisions = [decision for batch in results for decision in batch]

    awarded = [decision for decision in decisions if decision.awarded]
    capped = [decision for decision in decisions if not decision.awarded]
    assert len(awarded) == 1
    assert len(capped) == 1
    assert capped[0].outcome == EvaluationOutcome.SKIPPED
    assert capped[0].reason == "cap_exceeded"

    async with session_factory() as session:
        stored_rule = await session.get(CampaignRule, rule.id)
        assert stored_rule.current_enrollments == 1
        assert await _count(session, Enrollment.id, Enrollment.rule_id == rule.id) == 1
        assert await _count(session, LedgerTransaction.id) == 1


@pytest.mark.asyncio
async def test_full_rule_reports_cap_exceeded(session_factory, seed) -> None:
    client = await seed.client()
    await seed.rule(client, RuleType.ORDER_VALUE, points=5, max_enrollments=1)
    engine = _engine(session_factory)

    [first] = await engine.evaluate(_order(client, "first", "order-1"))
    [second] = await engine.evaluate(_order(client, "second", "order-2"))

    assert first.awarded
    assert second.outcome == EvaluationOutcome.SKIPPED
    assert second.reason == "cap_exceeded"
    assert second.details == {"max_enrollments": 1}


@pytest.mark.asyncio
async def test_concurrent_events_for_one_member_respect_per_customer_limit(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "regular", email="regular@example.com")
    rule = await seed.rule(client, RuleType.ORDER_VALUE, points=20, max_times_per_customer=1)
    engine = _engine(session_factory, ttl_seconds=60)

    results = await asyncio.gather(
        *(engine.evaluate(_order(client, "regular", f"order-{index}")) for index in range(4))
    )
    decisions = [decision for batch in results for decision in batch]

    assert sum(1 for decision in decisions if decision.awarded) == 1
    assert {decision.reason for decision in decisions if not decision.awarded} == {"max_times_per_customer"}

    async with session_factory() as session:
        assert (await session.get(Member, member.id)).points_balance == 20
        assert await _count(session, Enrollment.id, Enrollment.rule_id == rule.id) == 1
        assert (await session.get(CampaignRule, rule.id)).current_enrollments == 1


@pytest.mark.asyncio
async def test_cap_holds_under_a_burst_of_events(session_factory, seed) -> None:
    client = await seed.client()
    rule = await seed.rule(client, RuleType.ORDER_VALUE, points=5, max_enrollments=3)
    engine = _engine(session_factory, ttl_seconds=60)

    results = await asyncio.gather(
        *(engine.evaluate(_order(client, f"burst-{index}", f"order-{index}")) for index in range(8))
    )

    assert sum(1 for batch in results for decision in batch if decision.awarded) == 3
    async with session_factory() as session:
        assert (await session.get(CampaignRule, rule.id)).current_enrollments == 3


@pytest.mark.asyncio
async def test_out_of_stock_reward_uses_support_fallback(session_factory, seed) -> None:
    client = await seed.client(name="Acme Coffee", support_contact="help@acme.test")
    await seed.member(client, "cust-3", email="bo@example.com")
    reward = await seed.reward(client, codes=[])
    await seed.rule(client, RuleType.ORDER_VALUE, reward_id=reward.id, channel=CommunicationChannel.EMAIL)

    [decision] = await _engine(session_factory).evaluate(_order(client, "cust-3", "order-7"))

    assert decision.outcome == EvaluationOutcome.AWARDED
    assert decision.reason == "out_of_stock"
    assert decision.voucher_code is None

    async with session_factory() as session:
        allocation = (await session.execute(select(RewardAllocation))).scalar_one()
        assert allocation.status == RewardAllocationStatus.FAILED
        assert allocation.failure_reason == "out_of_stock"

        record = (await session.execute(select(CommunicationRecord))).scalar_one()
        assert record.fallback_render is True
        assert record.allocation_id == allocation.id
        assert "please contact help@acme.test" in record.body


@pytest.mark.asyncio
async def test_unique_code_reward_is_rendered_into_message(session_factory, seed) -> None:
    client = await seed.client()
    await seed.member(client, "cust-4", email="cy@example.com")
    reward = await seed.reward(client, codes=["FREE-1"], title="Free croissant")
    template = await seed.template(client, body="{name}: {reward} at {link}, valid {validity}. {unknown}")
    await seed.rule(client, RuleType.ORDER_VALUE, reward_id=reward.id, template_id=template.id)

    [decision] = await _engine(session_factory).evaluate(_order(client, "cust-4", "order-8"))

    assert decision.voucher_code == "FREE-1"
    async with session_factory() as session:
        record = (await session.execute(select(CommunicationRecord))).scalar_one()
        assert record.channel == CommunicationChannel.EMAIL
        assert "Free croissant (code FREE-1)" in record.body
        assert record.body.endswith("{unknown}")
        assert record.personalized_url.endswith("/FREE-1")


@pytest.mark.asyncio
async def test_referral_credits_the_referrer(session_factory, seed) -> None:
    client = await seed.client()
    referrer = await seed.member(client, "referrer", email="ref@example.com", referral_code="REF123")
    rule = await seed.rule(
        client,
        RuleType.REFERRAL,
        conditions={"referral_discount_type": "fixed", "referral_discount_value": 5},
        points=50,
    )
    engine = _engine(session_factory)

    signup = TriggerEvent(
        event_type=EventType.SIGNUP,
        client_id=client.id,
        member_identifier="newbie@example.com",
        reference_id="signup-newbie",
        payload={"referral_code": "ref123", "name": "Newbie"},
    )
    [decision] = await engine.evaluate(signup)

    assert decision.outcome == EvaluationOutcome.AWARDED
    assert decision.member_id == referrer.id
    assert decision.details["referral_discount"]["amount"] == 5

    async with session_factory() as session:
        referred = (await session.execute(select(Member).where(Member.external_id == "newbie@example.com"))).scalar_one()
        assert referred.email == "newbie@example.com"
        assert referred.full_name == "Newbie"
        enrollment = (await session.execute(select(Enrollment).where(Enrollment.rule_id == rule.id))).scalar_one()
        assert enrollment.member_id == referrer.id
        assert enrollment.referred_member_id == referred.id
        assert (await session.get(Member, referrer.id)).points_balance == 50

    unknown = TriggerEvent(
        event_type=EventType.REFERRAL,
        client_id=client.id,
        member_identifier="someone-else",
        reference_id="referral-2",
        payload={"referral_code": "NOPE"},
    )
    [missing] = await engine.evaluate(unknown)
    assert missing.outcome == EvaluationOutcome.REJECTED
    assert missing.reason == "referrer_not_found"

    self_referral = _order(client, "referrer", "order-self", referral_code="REF123")
    [own] = await engine.evaluate(self_referral)
    assert own.outcome == EvaluationOutcome.REJECTED
    assert own.details["check"] == "self_referral"


@pytest.mark.asyncio
async def test_daily_referral_limit(session_factory, seed) -> None:
    client = await seed.client()
    await seed.member(client, "host", referral_code="HOST01")
    await seed.rule(client, RuleType.REFERRAL, conditions={"max_referrals_per_day": 1}, points=20)
    engine = _engine(session_factory)

    def _referral(identifier: str) -> TriggerEvent:
        return TriggerEvent(
            event_type=EventType.REFERRAL,
            client_id=client.id,
            member_identifier=identifier,
            reference_id=f"referral-{identifier}",
            payload={"referral_code": "HOST01"},
        )

    [first] = await engine.evaluate(_referral("friend-1"))
    [second] = await engine.evaluate(_referral("friend-2"))

    assert first.awarded
    assert second.outcome == EvaluationOutcome.SKIPPED
    assert second.reason == "daily_referral_limit"


@pytest.mark.asyncio
async def test_per_member_limit_and_cooldown(session_factory, seed) -> None:
    client = await seed.client()
    limited = await seed.rule(client, RuleType.ORDER_COUNT, name="Twice only", points=5, max_times_per_customer=2)
    cooling = await seed.rule(client, RuleType.ORDER_VALUE, name="Weekly", points=7, cooldown_days=7)
    engine = _engine(session_factory)

    outcomes: dict = {limited.id: [], cooling.id: []}
    for index in range(3):
        decisions = await engine.evaluate(_order(client, "regular", f"order-{index}", order_count=index + 1))
        for decision in decisions:
            outcomes[decision.rule_id].append((decision.outcome, decision.reason))

    assert outcomes[limited.id] == [
        (EvaluationOutcome.AWARDED, None),
        (EvaluationOutcome.AWARDED, None),
        (EvaluationOutcome.SKIPPED, "max_times_per_customer"),
    ]
    assert outcomes[cooling.id] == [
        (EvaluationOutcome.AWARDED, None),
        (EvaluationOutcome.SKIPPED, "cooldown"),
        (EvaluationOutcome.SKIPPED, "cooldown"),
    ]


@pytest.mark.asyncio
async def test_window_start_cooldown_basis(session_factory, seed) -> None:
    client = await seed.client()
    await seed.rule(
        client,
        RuleType.ORDER_VALUE,
        points=3,
        cooldown_days=30,
        cooldown_basis=CooldownBasis.WINDOW_START,
        start_date=utcnow() - timedelta(days=45),
    )
    engine = _engine(session_factory)

    [first] = await engine.evaluate(_order(client, "monthly", "order-1"))
    [second] = await engine.evaluate(_order(client, "monthly", "order-2"))

    assert first.awarded
    assert second.reason == "cooldown"
    assert "window_start" in second.details


@pytest.mark.asyncio
async def test_failing_rule_does_not_block_the_others(session_factory, seed, monkeypatch) -> None:
    client = await seed.client()
    reward = await seed.reward(client, codes=["X-1"])
    broken = await seed.rule(client, RuleType.ORDER_VALUE, name="Broken", reward_id=reward.id, points=10, priority=10)
    healthy = await seed.rule(client, RuleType.ORDER_VALUE, name="Healthy", points=25, priority=1)

    async def _explode(self, *args, **kwargs):
        raise RuntimeError("voucher store unavailable")

    monkeypatch.setattr(VoucherIssuer, "issue", _explode)

    decisions = await _engine(session_factory).evaluate(_order(client, "cust-5", "order-5"))

    assert [decision.rule_id for decision in decisions] == [broken.id, healthy.id]
    assert decisions[0].outcome == EvaluationOutcome.FAILED
    assert decisions[0].reason == "RuntimeError"
    assert decisions[1].awarded

    async with session_factory() as session:
        # The failed rule's enrollment, counter and points rolled back together.
        assert await _count(session, Enrollment.id, Enrollment.rule_id == broken.id) == 0
        assert (await session.get(CampaignRule, broken.id)).current_enrollments == 0
        member = (await session.execute(select(Member).where(Member.external_id == "cust-5"))).scalar_one()
        assert member.points_balance == 25
        failed_rows = await _count(
            session,
            RuleEvaluation.id,
            RuleEvaluation.rule_id == broken.id,
            RuleEvaluation.outcome == EvaluationOutcome.FAILED,
        )
        assert failed_rows == 1


@pytest.mark.asyncio
async def test_disabled_channel_awards_without_message(session_factory, seed) -> None:
    client = await seed.client(communication_settings={"email_enabled": False})
    await seed.member(client, "quiet", email="quiet@example.com")
    await seed.rule(client, RuleType.ORDER_VALUE, points=10, channel=CommunicationChannel.EMAIL)

    [decision] = await _engine(session_factory).evaluate(_order(client, "quiet", "order-q"))

    assert decision.awarded
    assert decision.communication_id is None
    async with session_factory() as session:
        assert await _count(session, CommunicationRecord.id) == 0


@pytest.mark.asyncio
async def test_candidates_follow_priority_and_date_window(session_factory, seed) -> None:
    client = await seed.client()
    low = await seed.rule(client, RuleType.ORDER_VALUE, name="Low", points=1, priority=0)
    high = await seed.rule(client, RuleType.ORDER_VALUE, name="High", points=1, priority=5)
    await seed.rule(client, RuleType.ORDER_VALUE, name="Ended", points=1, end_date=utcnow() - timedelta(days=1))
    await seed.rule(client, RuleType.ORDER_VALUE, name="Paused", points=1, is_active=False)
    await seed.rule(client, RuleType.BIRTHDAY, name="Birthday", points=1)

    decisions = await _engine(session_factory).evaluate(_order(client, "cust-6", "order-6"))

    assert [decision.rule_id for decision in decisions] == [high.id, low.id]


@pytest.mark.asyncio
async def test_replayed_event_cannot_reopen_an_ended_campaign(session_factory, seed) -> None:
    client = await seed.client()
    await seed.rule(
        client,
        RuleType.ORDER_VALUE,
        name="Spring",
        points=10,
        start_date=utcnow() - timedelta(days=30),
        end_date=utcnow() - timedelta(days=1),
    )
    late = _order(client, "late", "order-late").model_copy(update={"occurred_at": utcnow() - timedelta(days=10)})

    assert await _engine(session_factory).evaluate(late) == []



@pytest.mark.asyncio
async def test_stale_cached_rule_is_rechecked_against_the_database(session_factory, seed) -> None:
    client = await seed.client()
    rule = await seed.rule(client, RuleType.ORDER_VALUE, points=1)
    engine = _engine(session_factory, ttl_seconds=60)

    [first] = await engine.evaluate(_order(client, "early", "order-1"))
    async with session_factory() as session:
        await session.execute(update(CampaignRule).where(CampaignRule.id == rule.id).values(is_active=False))
        await session.commit()
    [second] = await engine.evaluate(_order(client, "late", "order-2"))

    assert first.awarded
    assert second.outcome == EvaluationOutcome.SKIPPED
    assert second.reason == "rule_inactive"

    engine.rule_cache.invalidate(client.id)
    assert await engine.evaluate(_order(client, "later", "order-3")) == []


@pytest.mark.asyncio
async def test_invalid_conditions_are_skipped(session_factory, seed) -> None:
    client = await seed.client()
    await seed.rule(client, RuleType.ORDER_VALUE, conditions={"min_order_value": -5}, points=1)

    [decision] = await _engine(session_factory).evaluate(_order(client, "cust-7", "order-7"))

    assert decision.outcome == EvaluationOutcome.SKIPPED
    assert decision.reason == "invalid_conditions"


@pytest.mark.asyncio
async def test_event_profile_fills_new_member(session_factory, seed) -> None:
    client = await seed.client()
    await seed.rule(client, RuleType.PROFILE_COMPLETE, conditions={"required_fields": ["email", "birth_date"]}, points=15)

    event = TriggerEvent(
        event_type=EventType.PROFILE_UPDATED,
        client_id=client.id,
        member_identifier="shopify-77",
        reference_id="profile-77",
        payload={"profile": {"email": "pat@example.com", "birth_date": "1990-05-17", "attributes": {"tier": "gold"}}},
    )
    [decision] = await _engine(session_factory).evaluate(event)

    assert decision.awarded
    async with session_factory() as session:
        member = (await session.execute(select(Member).where(Member.external_id == "shopify-77"))).scalar_one()
        assert member.email == "pat@example.com"
        assert member.birth_date.isoformat() == "1990-05-17"
        assert member.attributes == {"tier": "gold"}
        assert member.referral_code
