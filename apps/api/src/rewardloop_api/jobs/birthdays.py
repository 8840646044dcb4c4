"""Daily sweep emitting birthday events for members with an upcoming birthday."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import utcnow
from rewardloop_api.models.campaign import CampaignRule, EvaluationOutcome, RuleType
from rewardloop_api.models.tenant import Member
from rewardloop_api.observability.tracing import get_tracer
from rewardloop_api.services.rules import CampaignRuleEngine, EventType, InvalidConditionsError, TriggerEvent
from rewardloop_api.services.rules.conditions import BirthdayConditions, birthday_in_year, parse_conditions

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _lead_days_by_client(session: AsyncSession) -> dict[UUID, set[int]]:
    rows = (
        await session.execute(
            select(CampaignRule.client_id, CampaignRule.trigger_conditions).where(
                CampaignRule.rule_type == RuleType.BIRTHDAY,
                CampaignRule.is_active.is_(True),
            )
        )
    ).all()
    leads: dict[UUID, set[int]] = defaultdict(set)
    for client_id, raw in rows:
        try:
            conditions = parse_conditions(RuleType.BIRTHDAY, raw)
        except InvalidConditionsError:
            logger.warning("Skipping birthday rule with invalid conditions", client_id=str(client_id))
            continue
        assert isinstance(conditions, BirthdayConditions)
        leads[client_id].add(conditions.days_before)
    return leads


async def run_birthday_sweep(
    *,
    session_factory: SessionFactory,
    engine: CampaignRuleEngine | None = None,
    now: datetime | None = None,
) -> Dict[str, Any]:
    """Emit one ``birthday`` event per member whose birthday is due for a rule.

    The reference ``birthday:<member>:<year>`` makes reruns on the same day
    resolve to duplicates.
    """

    moment = now or utcnow()
    today = moment.date()
    engine = engine or CampaignRuleEngine(session_factory)
    summary = {"clients": 0, "events": 0, "awarded": 0, "duplicates": 0, "errors": 0}

    with get_tracer().start_as_current_span("birthdays.run_birthday_sweep"):
        maybe_session = session_factory()
        session = maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session
        async with session as managed_session:
            leads = await _lead_days_by_client(managed_session)
            due: list[tuple[UUID, str, UUID, int]] = []
            for client_id, offsets in leads.items():
                targets = {today + timedelta(days=offset) for offset in offsets}
                members = (
                    await managed_session.execute(
                        select(Member.id, Member.external_id, Member.birth_date).where(
                            Member.client_id == client_id,
                            Member.birth_date.is_not(None),
                        )
                    )
                ).all()
                for member_id, external_id, birth_date in members:
                    for target in targets:
                        if birthday_in_year(birth_date, target.year) == target:
                            due.append((client_id, external_id, member_id, target.year))
                            break
            await managed_session.commit()
        summary["clients"] = len(leads)

        for client_id, external_id, member_id, year in due:
            event = TriggerEvent(
                event_type=EventType.BIRTHDAY,
                client_id=client_id,
                member_identifier=external_id,
                reference_id=f"birthday:{member_id}:{year}",
                occurred_at=moment,
            )
            summary["events"] += 1
            try:
                decisions = await engine.evaluate(event)
            except Exception as exc:  # continue with the next member
                summary["errors"] += 1
                logger.exception("Birthday evaluation failed", member_id=str(member_id), error=str(exc))
                continue
            summary["awarded"] += sum(1 for decision in decisions if decision.awarded)
            summary["duplicates"] += sum(1 for decision in decisions if decision.outcome == EvaluationOutcome.DUPLICATE)

    logger.bind(summary=summary).info("Birthday sweep completed")
    return summary


__all__ = ["run_birthday_sweep"]
