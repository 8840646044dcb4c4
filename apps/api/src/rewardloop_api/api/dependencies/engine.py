"""Request-scoped access to the long-lived engine components."""

from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rewardloop_api.db.session import get_session_factory
from rewardloop_api.services.communications import CommunicationDispatcher
from rewardloop_api.services.rules import CampaignRuleEngine


def get_rule_engine(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CampaignRuleEngine:
    """One engine per app so the rule cache is shared across requests."""

    engine = getattr(request.app.state, "rule_engine", None)
    if engine is None:
        engine = CampaignRuleEngine(session_factory)
        request.app.state.rule_engine = engine
    return engine


def get_dispatcher(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> CommunicationDispatcher:
    adapters = getattr(request.app.state, "channel_adapters", None)
    return CommunicationDispatcher(session_factory, adapters=adapters)
