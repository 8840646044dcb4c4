import sys
from datetime import date
from pathlib import Path
from typing import Any, Iterable

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from rewardloop_api.app import create_app  # noqa: E402
from rewardloop_api.db.base import Base, import_models  # noqa: E402
from rewardloop_api.db.session import get_session, get_session_factory  # noqa: E402
from rewardloop_api.models.campaign import CampaignRule, RuleType  # noqa: E402
from rewardloop_api.models.communication import CommunicationChannel, MessageTemplate  # noqa: E402
from rewardloop_api.models.reward import CouponType, Reward, Voucher  # noqa: E402
from rewardloop_api.models.tenant import Client, Member, MembershipProgram  # noqa: E402
from rewardloop_api.models.tier import LoyaltyTier  # noqa: E402
from rewardloop_api.observability.engine import get_engine_store  # noqa: E402
from rewardloop_api.observability.scheduler import get_scheduler_store  # noqa: E402

import_models()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # A file database so concurrent sessions really contend for the write lock.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rewardloop.db'}",
        future=True,
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _reset_observability():
    get_engine_store().reset()
    get_scheduler_store().reset()
    yield
    get_engine_store().reset()
    get_scheduler_store().reset()


class Seeder:
    """Creates committed tenant fixtures through the shared session factory."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    async def _save(self, *objects: Any) -> None:
        async with self._session_factory() as session:
            session.add_all(objects)
            await session.commit()

    async def client(self, name: str = "Acme Coffee", **fields: Any) -> Client:
        client = Client(name=name, support_contact=fields.pop("support_contact", "help@acme.test"), **fields)
        await self._save(client)
        return client

    async def member(
        self,
        client: Client,
        external_id: str,
        *,
        email: str | None = None,
        phone: str | None = None,
        full_name: str | None = None,
        birth_date: date | None = None,
        referral_code: str | None = None,
    ) -> Member:
        member = Member(
            client_id=client.id,
            external_id=external_id,
            email=email,
            phone=phone,
            full_name=full_name,
            birth_date=birth_date,
            referral_code=referral_code,
            attributes={},
        )
        await self._save(member)
        return member

    async def program(self, client: Client, name: str = "Coffee Club") -> MembershipProgram:
        program = MembershipProgram(client_id=client.id, name=name)
        await self._save(program)
        return program

    async def tier(self, client: Client, name: str, min_points: int = 0, **fields: Any) -> LoyaltyTier:
        tier = LoyaltyTier(client_id=client.id, name=name, min_points=min_points, **fields)
        await self._save(tier)
        return tier

    async def reward(
        self,
        client: Client,
        *,
        coupon_type: CouponType = CouponType.UNIQUE,
        codes: Iterable[str] = (),
        title: str = "Free latte",
        **fields: Any,
    ) -> Reward:
        reward = Reward(client_id=client.id, title=title, coupon_type=coupon_type, **fields)
        await self._save(reward)
        vouchers = [Voucher(reward_id=reward.id, code=code) for code in codes]
        if vouchers:
            await self._save(*vouchers)
        return reward

    async def template(
        self,
        client: Client,
        *,
        channel: CommunicationChannel = CommunicationChannel.EMAIL,
        subject: str | None = "Hello {name}",
        body: str = "Hi {name}, enjoy {reward} from {client}: {link}",
    ) -> MessageTemplate:
        template = MessageTemplate(client_id=client.id, name="Reward notice", channel=channel, subject=subject, body=body)
        await self._save(template)
        return template

    async def rule(
        self,
        client: Client,
        rule_type: RuleType,
        *,
        name: str | None = None,
        conditions: dict[str, Any] | None = None,
        points: int = 0,
        **fields: Any,
    ) -> CampaignRule:
        rule = CampaignRule(
            client_id=client.id,
            name=name or f"{rule_type.value} rule",
            rule_type=rule_type,
            trigger_conditions=conditions or {},
            points_reward=points,
            **fields,
        )
        await self._save(rule)
        return rule


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)
