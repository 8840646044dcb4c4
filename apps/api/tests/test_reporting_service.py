import pytest

from rewardloop_api.models.campaign import RuleType
from rewardloop_api.services.ledger import PointsLedgerService
from rewardloop_api.services.members import MemberService
from rewardloop_api.services.reporting import ReportingService
from rewardloop_api.services.rules import CampaignRuleEngine, EventType, TriggerEvent


@pytest.mark.asyncio
async def test_summary_rolls_up_tenant_activity(session_factory, seed) -> None:
    tenant = await seed.client()
    other = await seed.client(name="Other Bakery")
    reward = await seed.reward(tenant, codes=[])
    points_rule = await seed.rule(tenant, RuleType.ORDER_VALUE, name="Points", points=30, priority=2, max_enrollments=10)
    voucher_rule = await seed.rule(tenant, RuleType.ORDER_VALUE, name="Voucher", reward_id=reward.id, priority=1)
    await seed.rule(other, RuleType.ORDER_VALUE, name="Elsewhere", points=5)

    engine = CampaignRuleEngine(session_factory)
    for identifier in ("a", "b"):
        await engine.evaluate(
            TriggerEvent(
                event_type=EventType.ORDER_PLACED,
                client_id=tenant.id,
                member_identifier=identifier,
                reference_id=f"order-{identifier}",
                payload={"order_value": 50},
            )
        )

    async with session_factory() as session:
        member = await MemberService(session).require_member(tenant.id, "a")
        await PointsLedgerService(session).redeem(member.id, 10, "redeem-a")
        await session.commit()

    async with session_factory() as session:
        summary = await ReportingService(session, window_days=14).summary(tenant.id)

    assert summary.window_days == 14
    assert summary.ledger.points_outstanding == 50
    assert summary.ledger.member_count == 2
    assert summary.ledger.totals_by_type == {"earn": 60, "redeem": -10}

    assert [(rule.rule_id, rule.current_enrollments, rule.enrollments_in_window) for rule in summary.rules] == [
        (points_rule.id, 2, 2),
        (voucher_rule.id, 2, 2),
    ]
    assert summary.rules[0].max_enrollments == 10
    assert summary.rule_outcomes == {"awarded": 4}
    assert summary.reward_allocations == {"failed": 2}
    assert summary.communication_statuses == {}
