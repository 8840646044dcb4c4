"""Unique and generic reward code allocation."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from rewardloop_api.core.clock import as_utc, utcnow
from rewardloop_api.models.reward import CouponType, RewardAllocation, RewardAllocationStatus, Voucher
from rewardloop_api.services.errors import AlreadyRedeemedError, OutOfStockError, VoucherNotFoundError
from rewardloop_api.services.rewards import VoucherIssuer


@pytest.mark.asyncio
async def test_unique_codes_are_handed_out_once(session_factory, seed) -> None:
    client = await seed.client()
    alice = await seed.member(client, "alice")
    bob = await seed.member(client, "bob")
    reward = await seed.reward(client, codes=["LATTE-1", "LATTE-2"], validity_days=14)

    async with session_factory() as session:
        issuer = VoucherIssuer(session)
        first = await issuer.issue_unique(reward.id, alice.id, "order-1")
        second = await issuer.issue_unique(reward.id, bob.id, "order-2")
        assert await issuer.remaining_stock(reward.id) == 0
        await session.commit()

    assert {first.code, second.code} == {"LATTE-1", "LATTE-2"}
    assert first.status == RewardAllocationStatus.ISSUED
    assert first.redemption_link.endswith(f"/{first.code}")
    assert as_utc(first.valid_until) - as_utc(first.created_at) == timedelta(days=14)

    async with session_factory() as session:
        vouchers = (await session.execute(select(Voucher).order_by(Voucher.code))).scalars().all()
        assert {voucher.issued_to_member_id for voucher in vouchers} == {alice.id, bob.id}


@pytest.mark.asyncio
async def test_issue_is_idempotent_per_key(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "carol")
    reward = await seed.reward(client, codes=["A", "B"])

    async with session_factory() as session:
        issuer = VoucherIssuer(session)
        first = await issuer.issue(reward.id, member.id, "order-1")
        again = await issuer.issue(reward.id, member.id, "order-1")
        await session.commit()

        assert again.id == first.id
        assert await issuer.remaining_stock(reward.id) == 1


@pytest.mark.asyncio
async def test_out_of_stock_leaves_failed_allocation(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "dave")
    reward = await seed.reward(client, codes=[])

    async with session_factory() as session:
        issuer = VoucherIssuer(session)
        with pytest.raises(OutOfStockError):
            await issuer.issue_unique(reward.id, member.id, "order-1")

        allocation = await issuer.issue(reward.id, member.id, "order-1")
        await session.commit()

    assert allocation.status == RewardAllocationStatus.FAILED
    assert allocation.failure_reason == "out_of_stock"
    assert allocation.code is None

    async with session_factory() as session:
        rows = (await session.execute(select(RewardAllocation))).scalars().all()
        assert len(rows) == 1


@pytest.mark.asyncio
async def test_generic_code_is_shared(session_factory, seed) -> None:
    client = await seed.client()
    first_member = await seed.member(client, "erin")
    second_member = await seed.member(client, "frank")
    expiry = utcnow() + timedelta(days=3)
    reward = await seed.reward(
        client,
        coupon_type=CouponType.GENERIC,
        generic_coupon_code="WELCOME10",
        redemption_link="https://shop.example/apply?code={code}",
        validity_days=30,
        expiry_date=expiry,
    )

    async with session_factory() as session:
        issuer = VoucherIssuer(session)
        first = await issuer.issue(reward.id, first_member.id, "signup-1")
        second = await issuer.issue(reward.id, second_member.id, "signup-2")
        await session.commit()

    assert first.code == second.code == "WELCOME10"
    assert first.redemption_link == "https://shop.example/apply?code=WELCOME10"
    assert first.voucher_id is None
    # The reward's hard expiry wins over the shorter-lived validity window.
    assert abs(as_utc(first.valid_until) - expiry) < timedelta(seconds=1)


@pytest.mark.asyncio
async def test_mark_redeemed_only_once(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "gina")
    reward = await seed.reward(client, codes=["ONCE"])

    async with session_factory() as session:
        allocation = await VoucherIssuer(session).issue(reward.id, member.id, "order-1")
        await session.commit()

    async with session_factory() as session:
        voucher = await VoucherIssuer(session).mark_redeemed("ONCE", redeemed_by="pos-7")
        await session.commit()
    assert voucher.is_used
    assert voucher.used_by == "pos-7"

    async with session_factory() as session:
        refreshed = await session.get(RewardAllocation, allocation.id)
        assert refreshed.status == RewardAllocationStatus.REDEEMED
        assert refreshed.redeemed_at is not None

        with pytest.raises(AlreadyRedeemedError):
            await VoucherIssuer(session).mark_redeemed("ONCE")
        with pytest.raises(VoucherNotFoundError):
            await VoucherIssuer(session).mark_redeemed("MISSING")


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_code(session_factory, seed) -> None:
    client = await seed.client()
    members = [await seed.member(client, f"rush-{index}") for index in range(6)]
    reward = await seed.reward(client, codes=["RUSH-1", "RUSH-2", "RUSH-3", "RUSH-4"])

    async def _claim(member, index: int):
        async with session_factory() as session:
            allocation = await VoucherIssuer(session).issue(reward.id, member.id, f"order-{index}")
            await session.commit()
            return allocation

    allocations = await asyncio.gather(*(_claim(member, index) for index, member in enumerate(members)))

    issued = [allocation.code for allocation in allocations if allocation.status == RewardAllocationStatus.ISSUED]
    assert sorted(issued) == ["RUSH-1", "RUSH-2", "RUSH-3", "RUSH-4"]
    assert sum(1 for allocation in allocations if allocation.failure_reason == "out_of_stock") == 2

    async with session_factory() as session:
        holders = (
            await session.execute(select(Voucher.issued_to_member_id).where(Voucher.reward_id == reward.id))
        ).scalars().all()
        assert len(set(holders)) == 4
        assert await VoucherIssuer(session).remaining_stock(reward.id) == 0
