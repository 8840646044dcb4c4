"""Communication dispatch, retry classification and provider callbacks."""

import asyncio
from datetime import timedelta

import httpx
import pytest

from rewardloop_api.models.communication import CommunicationChannel, CommunicationRecord, CommunicationStatus
from rewardloop_api.services.communications import (
    CommunicationDispatcher,
    CommunicationService,
    HttpProviderAdapter,
    InMemoryChannelAdapter,
)
from rewardloop_api.services.errors import (
    EventValidationError,
    PermanentProviderError,
    TransientProviderError,
)


async def _enqueue(
    session_factory,
    client,
    member,
    *,
    channel: CommunicationChannel = CommunicationChannel.EMAIL,
    recipient: str = "ada@example.com",
    max_attempts: int | None = None,
    dedupe_key: str | None = None,
):
    async with session_factory() as session:
        record = await CommunicationService(session).enqueue(
            client_id=client.id,
            member_id=member.id,
            channel=channel,
            recipient=recipient,
            template_subject="Your {reward}",
            template_body="Hi {name}, use {link} before {validity}. {footer}",
            variables={"name": "Ada", "reward": "Free latte", "link": "https://r.example/ABC", "validity": "May"},
            dedupe_key=dedupe_key,
            max_attempts=max_attempts,
        )
        await session.commit()
        return record.id


def _dispatcher(session_factory, adapter=None, **overrides) -> CommunicationDispatcher:
    adapters = {CommunicationChannel.EMAIL: adapter} if adapter is not None else {}
    options = {"backoff_base_seconds": 30, "backoff_max_seconds": 600, "send_timeout_seconds": 5, "concurrency": 1}
    options.update(overrides)
    return CommunicationDispatcher(session_factory, adapters=adapters, **options)


@pytest.mark.asyncio
async def test_send_delivers_once(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "ada", email="ada@example.com")
    record_id = await _enqueue(session_factory, client, member)
    adapter = InMemoryChannelAdapter()
    dispatcher = _dispatcher(session_factory, adapter)

    result = await dispatcher.send(record_id)
    repeat = await dispatcher.send(record_id)

    assert result.delivered
    assert result.attempt_count == 1
    assert repeat.skipped
    assert repeat.status == CommunicationStatus.SENT
    assert adapter.calls == 1

    recipient, subject, body = adapter.sent_messages[0]
    assert recipient == "ada@example.com"
    assert subject == "Your Free latte"
    # Unknown placeholders survive rendering untouched.
    assert body == "Hi Ada, use https://r.example/ABC before May. {footer}"

    async with session_factory() as session:
        record = await session.get(CommunicationRecord, record_id)
        assert record.status == CommunicationStatus.SENT
        assert record.provider_message_id == "mem-1"
        assert record.sent_at is not None
        assert record.claim_token is None


@pytest.mark.asyncio
async def test_transient_errors_retry_until_attempts_run_out(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "bo", email="bo@example.com")
    record_id = await _enqueue(session_factory, client, member, max_attempts=3)
    adapter = InMemoryChannelAdapter(failures=[TransientProviderError("throttled")] * 3)
    dispatcher = _dispatcher(session_factory, adapter)

    first = await dispatcher.send(record_id)
    assert first.status == CommunicationStatus.PENDING
    assert not first.delivered
    assert first.error == "throttled"

    async with session_factory() as session:
        record = await session.get(CommunicationRecord, record_id)
        assert record.attempt_count == 1
        assert record.next_attempt_at is not None
        assert record.error_message == "throttled"

    # Not due yet, so a scheduled sweep leaves it alone.
    waiting = await dispatcher.send(record_id, respect_schedule=True)
    assert waiting.skipped
    assert adapter.calls == 1

    second = await dispatcher.send(record_id)
    third = await dispatcher.send(record_id)

    assert second.status == CommunicationStatus.PENDING
    assert third.status == CommunicationStatus.FAILED
    assert third.attempt_count == 3
    assert adapter.calls == 3

    after = await dispatcher.send(record_id)
    assert after.skipped
    assert adapter.calls == 3


@pytest.mark.asyncio
async def test_permanent_error_fails_immediately(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "cy", email="cy@example.com")
    record_id = await _enqueue(session_factory, client, member)
    adapter = InMemoryChannelAdapter(failures=[PermanentProviderError("mailbox does not exist")])

    result = await _dispatcher(session_factory, adapter).send(record_id)

    assert result.status == CommunicationStatus.FAILED
    assert result.attempt_count == 1
    async with session_factory() as session:
        record = await session.get(CommunicationRecord, record_id)
        assert record.error_message == "mailbox does not exist"
        assert record.next_attempt_at is None


@pytest.mark.asyncio
async def test_slow_provider_counts_as_transient(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "di", email="di@example.com")
    record_id = await _enqueue(session_factory, client, member)
    adapter = InMemoryChannelAdapter(delay_seconds=1.0)

    result = await _dispatcher(session_factory, adapter, send_timeout_seconds=0.05).send(record_id)

    assert result.status == CommunicationStatus.PENDING
    assert "timed out" in result.error
    assert adapter.sent_messages == []


@pytest.mark.asyncio
async def test_unexpected_adapter_errors_count_as_attempts(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "dot", email="dot@example.com")
    record_id = await _enqueue(session_factory, client, member, max_attempts=2)
    adapter = InMemoryChannelAdapter(
        failures=[ConnectionResetError("peer hung up"), RuntimeError("driver crashed")]
    )
    dispatcher = _dispatcher(session_factory, adapter)

    first = await dispatcher.send(record_id)

    assert first.status == CommunicationStatus.PENDING
    assert "ConnectionResetError" in first.error
    async with session_factory() as session:
        record = await session.get(CommunicationRecord, record_id)
        assert record.attempt_count == 1
        assert "peer hung up" in record.error_message
        assert record.claimed_until is None
        assert record.next_attempt_at is not None

    second = await dispatcher.send(record_id)

    assert second.status == CommunicationStatus.FAILED
    assert second.attempt_count == 2
    assert "RuntimeError" in second.error


@pytest.mark.asyncio
async def test_missing_adapter_fails_the_record(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "ed", phone="+15550001")
    record_id = await _enqueue(session_factory, client, member, channel=CommunicationChannel.SMS, recipient="+15550001")

    result = await _dispatcher(session_factory, InMemoryChannelAdapter()).send(record_id)

    assert result.status == CommunicationStatus.FAILED
    assert "No adapter" in result.error


def test_backoff_doubles_and_caps() -> None:
    dispatcher = _dispatcher(lambda: None, backoff_base_seconds=10, backoff_max_seconds=60)

    assert dispatcher.backoff_for(1) == timedelta(seconds=10)
    assert dispatcher.backoff_for(3) == timedelta(seconds=40)
    assert dispatcher.backoff_for(8) == timedelta(seconds=60)


@pytest.mark.asyncio
async def test_status_callbacks_only_move_forward(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "fay", email="fay@example.com")
    record_id = await _enqueue(session_factory, client, member)
    await _dispatcher(session_factory, InMemoryChannelAdapter()).send(record_id)

    async with session_factory() as session:
        service = CommunicationService(session)

        delivered = await service.apply_status_update(CommunicationStatus.DELIVERED, provider_message_id="mem-1")
        assert delivered.applied
        assert delivered.record.delivered_at is not None

        bounced = await service.apply_status_update(CommunicationStatus.FAILED, record_id=record_id, detail="bounce")
        assert not bounced.applied
        assert bounced.record.status == CommunicationStatus.DELIVERED

        clicked = await service.apply_status_update(CommunicationStatus.CLICKED, record_id=record_id)
        assert clicked.applied
        assert clicked.record.clicked_at is not None

        late_delivery = await service.apply_status_update(CommunicationStatus.DELIVERED, record_id=record_id)
        assert not late_delivery.applied
        assert late_delivery.record.status == CommunicationStatus.CLICKED

        with pytest.raises(EventValidationError):
            await service.apply_status_update(CommunicationStatus.SENT, record_id=record_id)
        await session.commit()


@pytest.mark.asyncio
async def test_bounce_after_send_marks_failed(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "gus", email="gus@example.com")
    record_id = await _enqueue(session_factory, client, member)
    await _dispatcher(session_factory, InMemoryChannelAdapter()).send(record_id)

    async with session_factory() as session:
        result = await CommunicationService(session).apply_status_update(
            CommunicationStatus.FAILED, record_id=record_id, detail="hard bounce"
        )
        await session.commit()

    assert result.applied
    assert result.record.status == CommunicationStatus.FAILED
    assert result.record.error_message == "hard bounce"


@pytest.mark.asyncio
async def test_requeue_paths(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "hal", email="hal@example.com")
    record_id = await _enqueue(session_factory, client, member, recipient="hal@example.com")
    adapter = InMemoryChannelAdapter(failures=[PermanentProviderError("rejected")])
    dispatcher = _dispatcher(session_factory, adapter)
    await dispatcher.send(record_id)

    async with session_factory() as session:
        requeued = await CommunicationService(session).requeue(record_id)
        await session.commit()
    assert requeued.id == record_id
    assert requeued.status == CommunicationStatus.PENDING
    assert requeued.attempt_count == 0

    assert (await dispatcher.send(record_id)).delivered

    async with session_factory() as session:
        service = CommunicationService(session)
        with pytest.raises(EventValidationError):
            await service.requeue(record_id)
        clone = await service.requeue(record_id, force=True)
        await session.commit()

    assert clone.id != record_id
    assert clone.status == CommunicationStatus.PENDING
    assert clone.recipient == "hal@example.com"


@pytest.mark.asyncio
async def test_enqueue_reuses_dedupe_key(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "ivy", email="ivy@example.com")

    first = await _enqueue(session_factory, client, member, dedupe_key="enrollment:1")
    second = await _enqueue(session_factory, client, member, dedupe_key="enrollment:1")

    assert first == second


@pytest.mark.asyncio
async def test_send_pending_summarises_batch(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "jo", email="jo@example.com", phone="+15550002")
    await _enqueue(session_factory, client, member)
    await _enqueue(session_factory, client, member)
    await _enqueue(session_factory, client, member, channel=CommunicationChannel.SMS, recipient="+15550002")
    adapter = InMemoryChannelAdapter()
    dispatcher = _dispatcher(session_factory, adapter, concurrency=2)

    summary = await dispatcher.send_pending(client_id=client.id)

    assert summary == {"processed": 3, "sent": 2, "retrying": 0, "failed": 1, "skipped": 0, "errors": 0}
    assert adapter.calls == 2
    assert (await dispatcher.send_pending(client_id=client.id))["processed"] == 0


@pytest.mark.asyncio
async def test_overlapping_sweeps_send_each_record_once(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "lu", email="lu@example.com")
    ids = [await _enqueue(session_factory, client, member) for _ in range(4)]
    adapter = InMemoryChannelAdapter(delay_seconds=0.05)
    first = _dispatcher(session_factory, adapter, concurrency=4)
    second = _dispatcher(session_factory, adapter, concurrency=4)

    summaries = await asyncio.gather(
        first.send_pending(client_id=client.id),
        second.send_pending(client_id=client.id),
        first.send_pending(client_id=client.id),
    )

    assert sum(summary["sent"] for summary in summaries) == 4
    assert sum(summary["errors"] for summary in summaries) == 0
    assert adapter.calls == 4
    assert len(adapter.sent_messages) == 4

    async with session_factory() as session:
        for record_id in ids:
            record = await session.get(CommunicationRecord, record_id)
            assert record.status == CommunicationStatus.SENT
            assert record.attempt_count == 1


@pytest.mark.asyncio
async def test_list_records_pages_newest_first(session_factory, seed) -> None:
    client = await seed.client()
    member = await seed.member(client, "kit", email="kit@example.com")
    ids = [await _enqueue(session_factory, client, member) for _ in range(3)]

    async with session_factory() as session:
        service = CommunicationService(session)
        first = await service.list_records(client.id, limit=2)
        second = await service.list_records(client.id, limit=2, cursor=first.next_cursor)

    assert [record.id for record in first.records] == [ids[2], ids[1]]
    assert [record.id for record in second.records] == [ids[0]]
    assert second.next_cursor is None


@pytest.mark.asyncio
async def test_http_provider_adapter_classifies_responses() -> None:
    seen: list[httpx.Request] = []
    responses = iter(
        [
            httpx.Response(200, json={"id": "sms-42"}),
            httpx.Response(503, json={"error": "busy"}),
            httpx.Response(429, json={"error": "slow down"}),
            httpx.Response(400, json={"error": "bad number"}),
        ]
    )

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return next(responses)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        adapter = HttpProviderAdapter(
            channel=CommunicationChannel.SMS,
            url="https://sms.example/send",
            token="secret",
            sender="ACME",
            http_client=http_client,
        )
        receipt = await adapter.send("+15550003", None, "Your code is ABC")
        with pytest.raises(TransientProviderError):
            await adapter.send("+15550003", None, "retry me")
        with pytest.raises(TransientProviderError):
            await adapter.send("+15550003", None, "retry me")
        with pytest.raises(PermanentProviderError) as excinfo:
            await adapter.send("bogus", None, "never")

    assert receipt.provider_message_id == "sms-42"
    assert seen[0].headers["Authorization"] == "Bearer secret"
    assert b'"from":"ACME"' in seen[0].content.replace(b" ", b"")
    assert excinfo.value.response == {"error": "bad number"}
