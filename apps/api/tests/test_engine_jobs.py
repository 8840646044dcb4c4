"""Expiry, birthday and dispatch sweeps plus their interval workers."""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from rewardloop_api.core.clock import utcnow
from rewardloop_api.jobs.birthdays import run_birthday_sweep
from rewardloop_api.jobs.communications import dispatch_pending
from rewardloop_api.jobs.ledger import expire_due_points
from rewardloop_api.models.campaign import RuleType
from rewardloop_api.models.communication import CommunicationChannel, CommunicationRecord, CommunicationStatus
from rewardloop_api.models.ledger import ExpiryLot, LedgerTransaction, LedgerTransactionType
from rewardloop_api.models.tenant import Member
from rewardloop_api.services.communications import CommunicationService, InMemoryChannelAdapter
from rewardloop_api.services.ledger import PointsLedgerService
from rewardloop_api.workers import CommunicationDispatchWorker, ExpirySweepWorker


async def _earn_lots(session_factory, member, amounts, *, expiry_days: int = 30, prefix: str = "order") -> None:
    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        for index, amount in enumerate(amounts):
            await ledger.earn(member.id, amount, f"{prefix}-{index}", expiry_days=expiry_days)
        await session.commit()


@pytest.mark.asyncio
async def test_expire_due_points_walks_every_batch(session_factory, seed) -> None:
    client = await seed.client()
    first = await seed.member(client, "m-1")
    second = await seed.member(client, "m-2")
    await _earn_lots(session_factory, first, [100, 40])
    await _earn_lots(session_factory, second, [25])
    await _earn_lots(session_factory, second, [999], expiry_days=365, prefix="annual")

    summary = await expire_due_points(
        session_factory=session_factory,
        limit=1,
        reference_time=utcnow() + timedelta(days=31),
    )

    assert summary == {"scanned": 3, "expired": 3, "points_expired": 165, "noop": 0, "errors": 0}

    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        assert await ledger.balance_of(first.id) == 0
        assert await ledger.balance_of(second.id) == 999
        remaining = (await session.execute(select(ExpiryLot).where(ExpiryLot.expired.is_(False)))).scalars().all()
        assert [lot.points_amount for lot in remaining] == [999]

    again = await expire_due_points(session_factory=session_factory, reference_time=utcnow() + timedelta(days=31))
    assert again["scanned"] == 0


@pytest.mark.asyncio
async def test_overlapping_expiry_sweeps_expire_each_lot_once(session_factory, seed) -> None:
    client = await seed.client()
    first = await seed.member(client, "m-1")
    second = await seed.member(client, "m-2")
    await _earn_lots(session_factory, first, [100, 40])
    await _earn_lots(session_factory, second, [25, 10])
    horizon = utcnow() + timedelta(days=31)

    summaries = await asyncio.gather(
        *(expire_due_points(session_factory=session_factory, limit=2, reference_time=horizon) for _ in range(3))
    )

    assert sum(summary["expired"] for summary in summaries) == 4
    assert sum(summary["points_expired"] for summary in summaries) == 175
    assert sum(summary["errors"] for summary in summaries) == 0

    async with session_factory() as session:
        expirations = (
            await session.execute(
                select(LedgerTransaction.reference_id).where(
                    LedgerTransaction.transaction_type == LedgerTransactionType.EXPIRE
                )
            )
        ).scalars().all()
        assert len(expirations) == len(set(expirations)) == 4
        ledger = PointsLedgerService(session)
        assert await ledger.balance_of(first.id) == 0
        assert await ledger.balance_of(second.id) == 0


@pytest.mark.asyncio
async def test_expired_lot_of_a_spent_balance_is_a_noop(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "spender")
    async with session_factory() as session:
        ledger = PointsLedgerService(session)
        await ledger.earn(member.id, 50, "order-1", expires_at=utcnow() - timedelta(hours=1))
        await ledger.redeem(member.id, 50, "redeem-1")
        await session.commit()

    summary = await expire_due_points(session_factory=session_factory)

    assert summary == {"scanned": 1, "expired": 0, "points_expired": 0, "noop": 1, "errors": 0}
    async with session_factory() as session:
        assert await PointsLedgerService(session).balance_of(member.id) == 0


@pytest.mark.asyncio
async def test_expiry_worker_run_once_records_summary(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "lapsed")
    async with session_factory() as session:
        await PointsLedgerService(session).earn(member.id, 70, "order-1", expires_at=utcnow() - timedelta(minutes=5))
        await session.commit()

    worker = ExpirySweepWorker(session_factory, interval_seconds=3600, batch_size=10)
    summary = await worker.run_once()

    assert summary["expired"] == 1
    assert summary["points_expired"] == 70
    assert worker.last_summary == summary


@pytest.mark.asyncio
async def test_expiry_worker_start_and_stop(session_factory) -> None:
    worker = ExpirySweepWorker(session_factory, interval_seconds=3600)

    worker.start()
    assert worker.is_running
    await asyncio.sleep(0.05)
    await worker.stop()

    assert not worker.is_running
    assert worker.last_summary == {"scanned": 0, "expired": 0, "points_expired": 0, "noop": 0, "errors": 0}


@pytest.mark.asyncio
async def test_birthday_sweep_awards_once_per_year(session_factory, seed) -> None:
    client = await seed.client()
    celebrant = await seed.member(client, "bday", email="bday@example.com", birth_date=date(1990, 3, 12))
    await seed.member(client, "summer", birth_date=date(1985, 7, 1))
    await seed.member(client, "unknown")
    await seed.rule(client, RuleType.BIRTHDAY, conditions={"days_before": 2}, points=40)
    now = datetime(2027, 3, 10, 6, 0, tzinfo=timezone.utc)

    summary = await run_birthday_sweep(session_factory=session_factory, now=now)
    rerun = await run_birthday_sweep(session_factory=session_factory, now=now)

    assert summary == {"clients": 1, "events": 1, "awarded": 1, "duplicates": 0, "errors": 0}
    assert rerun == {"clients": 1, "events": 1, "awarded": 0, "duplicates": 1, "errors": 0}

    async with session_factory() as session:
        member = await session.get(Member, celebrant.id)
        assert member.points_balance == 40
        assert await PointsLedgerService(session).balance_of(celebrant.id) == 40


@pytest.mark.asyncio
async def test_birthday_sweep_without_rules_is_empty(session_factory, seed) -> None:
    client = await seed.client()
    await seed.member(client, "bday", birth_date=date(1990, 3, 12))

    summary = await run_birthday_sweep(session_factory=session_factory, now=datetime(2027, 3, 12, tzinfo=timezone.utc))

    assert summary == {"clients": 0, "events": 0, "awarded": 0, "duplicates": 0, "errors": 0}


async def _pending_record(session_factory, client, member) -> None:
    async with session_factory() as session:
        await CommunicationService(session).enqueue(
            client_id=client.id,
            member_id=member.id,
            channel=CommunicationChannel.EMAIL,
            recipient=member.email,
            template_body="Hi {name}",
            variables={"name": member.external_id},
        )
        await session.commit()


@pytest.mark.asyncio
async def test_dispatch_pending_job_and_worker(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "mail", email="mail@example.com")
    await _pending_record(session_factory, client, member)
    adapter = InMemoryChannelAdapter()

    summary = await dispatch_pending(
        session_factory=session_factory,
        adapters={CommunicationChannel.EMAIL: adapter},
    )
    assert summary["sent"] == 1
    assert adapter.sent_messages == [("mail@example.com", None, "Hi mail")]

    await _pending_record(session_factory, client, member)
    worker = CommunicationDispatchWorker(
        session_factory,
        adapters={CommunicationChannel.EMAIL: adapter},
        interval_seconds=3600,
    )
    assert (await worker.run_once())["sent"] == 1

    async with session_factory() as session:
        statuses = (await session.execute(select(CommunicationRecord.status))).scalars().all()
    assert statuses == [CommunicationStatus.SENT, CommunicationStatus.SENT]
