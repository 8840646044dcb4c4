"""Per-tenant TTL cache of active rule definitions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rewardloop_api.core.clock import as_utc, utcnow
from rewardloop_api.core.settings import settings
from rewardloop_api.models.campaign import CampaignRule, CooldownBasis, RuleType
from rewardloop_api.models.communication import CommunicationChannel

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


@dataclass(frozen=True, slots=True)
class RuleSnapshot:
    """Immutable copy of a rule row, safe to share across sessions."""

    id: UUID
    client_id: UUID
    name: str
    rule_type: RuleType
    trigger_conditions: dict[str, Any]
    points_reward: int
    points_expiry_days: int | None
    priority: int
    max_times_per_customer: int | None
    cooldown_days: int | None
    cooldown_basis: CooldownBasis
    start_date: datetime | None
    end_date: datetime | None
    max_enrollments: int | None
    program_id: UUID | None
    reward_id: UUID | None
    template_id: UUID | None
    channel: CommunicationChannel | None
    created_at: datetime

    @classmethod
    def from_model(cls, rule: CampaignRule) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            client_id=rule.client_id,
            name=rule.name,
            rule_type=rule.rule_type,
            trigger_conditions=dict(rule.trigger_conditions or {}),
            points_reward=rule.points_reward or 0,
            points_expiry_days=rule.points_expiry_days,
            priority=rule.priority or 0,
            max_times_per_customer=rule.max_times_per_customer,
            cooldown_days=rule.cooldown_days,
            cooldown_basis=rule.cooldown_basis or CooldownBasis.LAST_ENROLLMENT,
            start_date=as_utc(rule.start_date),
            end_date=as_utc(rule.end_date),
            max_enrollments=rule.max_enrollments,
            program_id=rule.program_id,
            reward_id=rule.reward_id,
            template_id=rule.template_id,
            channel=rule.channel,
            created_at=as_utc(rule.created_at) or utcnow(),
        )

    def in_window(self, moment: datetime) -> bool:
        if self.start_date is not None and moment < self.start_date:
            return False
        if self.end_date is not None and moment > self.end_date:
            return False
        return True

    @property
    def sort_key(self) -> tuple[int, datetime, str]:
        return (-self.priority, self.created_at, str(self.id))


@dataclass(slots=True)
class _CacheEntry:
    rules: tuple[RuleSnapshot, ...]
    expires_at: datetime | None

    def is_valid(self, now: datetime) -> bool:
        if self.expires_at is None:
            return True
        return now < self.expires_at


class RuleCache:
    """Caches each tenant's active rules for a short TTL."""

    def __init__(self, session_factory: SessionFactory, *, ttl_seconds: float | None = None) -> None:
        self._session_factory = session_factory
        ttl = settings.rule_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._ttl = timedelta(seconds=max(ttl, 0))
        self._cache: dict[UUID, _CacheEntry] = {}
        self._locks: dict[UUID, asyncio.Lock] = {}

    async def get(self, client_id: UUID) -> tuple[RuleSnapshot, ...]:
        now = utcnow()
        entry = self._cache.get(client_id)
        if entry and entry.is_valid(now):
            return entry.rules

        lock = self._locks.setdefault(client_id, asyncio.Lock())
        async with lock:
            entry = self._cache.get(client_id)
            if entry and entry.is_valid(utcnow()):
                return entry.rules
            rules = await self._load(client_id)
            expires_at = utcnow() + self._ttl if self._ttl else utcnow()
            self._cache[client_id] = _CacheEntry(rules=rules, expires_at=expires_at)
            logger.debug("Rule cache refreshed", client_id=str(client_id), rules=len(rules))
            return rules

    def invalidate(self, client_id: UUID | None = None) -> None:
        if client_id is None:
            self._cache.clear()
            return
        self._cache.pop(client_id, None)

    async def _load(self, client_id: UUID) -> tuple[RuleSnapshot, ...]:
        maybe_session = self._session_factory()
        session = maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session
        async with session as managed_session:
            stmt = select(CampaignRule).where(
                CampaignRule.client_id == client_id,
                CampaignRule.is_active.is_(True),
            )
            rows = (await managed_session.execute(stmt)).scalars().all()
            snapshots = tuple(sorted((RuleSnapshot.from_model(row) for row in rows), key=lambda rule: rule.sort_key))
            await managed_session.commit()
        return snapshots


__all__ = ["RuleCache", "RuleSnapshot"]
