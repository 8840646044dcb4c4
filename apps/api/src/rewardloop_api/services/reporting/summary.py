"""Read-side aggregates over ledger, enrollment and communication rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import utcnow
from rewardloop_api.models.campaign import CampaignRule, Enrollment, RuleEvaluation
from rewardloop_api.models.communication import CommunicationRecord
from rewardloop_api.models.ledger import LedgerTransaction
from rewardloop_api.models.reward import RewardAllocation
from rewardloop_api.models.tenant import Member


@dataclass(slots=True)
class RuleEnrollmentSummary:
    """Enrollment counters for a single campaign rule."""

    rule_id: UUID
    name: str
    rule_type: str
    is_active: bool
    current_enrollments: int
    max_enrollments: int | None
    enrollments_in_window: int


@dataclass(slots=True)
class LedgerActivitySummary:
    points_outstanding: int
    member_count: int
    totals_by_type: Dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ClientReportSummary:
    """Snapshot of a tenant's engine activity over a window."""

    client_id: UUID
    computed_at: datetime
    window_days: int
    ledger: LedgerActivitySummary
    rules: List[RuleEnrollmentSummary]
    rule_outcomes: Dict[str, int]
    communication_statuses: Dict[str, int]
    reward_allocations: Dict[str, int]


class ReportingService:
    """Compute tenant-level reporting aggregates."""

    def __init__(self, db: AsyncSession, *, window_days: int = 30) -> None:
        self._db = db
        self._window_days = window_days

    async def summary(self, client_id: UUID) -> ClientReportSummary:
        now = utcnow()
        window_start = now - timedelta(days=self._window_days)
        return ClientReportSummary(
            client_id=client_id,
            computed_at=now,
            window_days=self._window_days,
            ledger=await self.ledger_activity(client_id, since=window_start),
            rules=await self.enrollment_counts(client_id, since=window_start),
            rule_outcomes=await self.rule_outcome_counts(client_id, since=window_start),
            communication_statuses=await self.communication_status_counts(client_id),
            reward_allocations=await self.allocation_counts(client_id, since=window_start),
        )

    async def ledger_activity(self, client_id: UUID, *, since: datetime | None = None) -> LedgerActivitySummary:
        """Points outstanding across members plus posted totals per type."""

        balance_row = (
            await self._db.execute(
                select(
                    func.coalesce(func.sum(Member.points_balance), 0),
                    func.count(Member.id),
                ).where(Member.client_id == client_id)
            )
        ).one()

        stmt = (
            select(LedgerTransaction.transaction_type, func.sum(LedgerTransaction.points_amount))
            .where(LedgerTransaction.client_id == client_id)
            .group_by(LedgerTransaction.transaction_type)
        )
        if since is not None:
            stmt = stmt.where(LedgerTransaction.created_at >= since)
        totals = {row[0].value: int(row[1] or 0) for row in (await self._db.execute(stmt)).all()}
        return LedgerActivitySummary(
            points_outstanding=int(balance_row[0] or 0),
            member_count=int(balance_row[1] or 0),
            totals_by_type=totals,
        )

    async def enrollment_counts(self, client_id: UUID, *, since: datetime | None = None) -> list[RuleEnrollmentSummary]:
        windowed = select(Enrollment.rule_id, func.count(Enrollment.id).label("total")).where(
            Enrollment.client_id == client_id
        )
        if since is not None:
            windowed = windowed.where(Enrollment.created_at >= since)
        windowed = windowed.group_by(Enrollment.rule_id)
        counts = {row.rule_id: int(row.total) for row in (await self._db.execute(windowed)).all()}

        rules = (
            await self._db.execute(
                select(CampaignRule)
                .where(CampaignRule.client_id == client_id)
                .order_by(CampaignRule.priority.desc(), CampaignRule.created_at.asc())
            )
        ).scalars().all()
        return [
            RuleEnrollmentSummary(
                rule_id=rule.id,
                name=rule.name,
                rule_type=rule.rule_type.value,
                is_active=bool(rule.is_active),
                current_enrollments=rule.current_enrollments or 0,
                max_enrollments=rule.max_enrollments,
                enrollments_in_window=counts.get(rule.id, 0),
            )
            for rule in rules
        ]

    async def rule_outcome_counts(self, client_id: UUID, *, since: datetime | None = None) -> dict[str, int]:
        stmt = (
            select(RuleEvaluation.outcome, func.count(RuleEvaluation.id))
            .where(RuleEvaluation.client_id == client_id)
            .group_by(RuleEvaluation.outcome)
        )
        if since is not None:
            stmt = stmt.where(RuleEvaluation.created_at >= since)
        return {row[0].value: int(row[1]) for row in (await self._db.execute(stmt)).all()}

    async def communication_status_counts(self, client_id: UUID) -> dict[str, int]:
        stmt = (
            select(CommunicationRecord.status, func.count(CommunicationRecord.id))
            .where(CommunicationRecord.client_id == client_id)
            .group_by(CommunicationRecord.status)
        )
        return {row[0].value: int(row[1]) for row in (await self._db.execute(stmt)).all()}

    async def allocation_counts(self, client_id: UUID, *, since: datetime | None = None) -> dict[str, int]:
        stmt = (
            select(RewardAllocation.status, func.count(RewardAllocation.id))
            .where(RewardAllocation.client_id == client_id)
            .group_by(RewardAllocation.status)
        )
        if since is not None:
            stmt = stmt.where(RewardAllocation.created_at >= since)
        return {row[0].value: int(row[1]) for row in (await self._db.execute(stmt)).all()}


__all__ = [
    "ClientReportSummary",
    "LedgerActivitySummary",
    "ReportingService",
    "RuleEnrollmentSummary",
]
