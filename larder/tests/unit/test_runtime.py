from __future__ import annotations

import asyncio
import time

import httpx
import pytest
from sqlalchemy import select

from larder.core.config import Settings
from larder.domain.messages import ChannelKind, NotificationMessage, PushCredentials, PushPayload
from larder.domain.models import PushSubscription
from larder.providers.channels.fake import FakeChannel
from larder.providers.channels.relay import RelayEmailChannel
from larder.services.runtime import NotificationRuntime
from larder.services.scheduling.markers import InMemoryMarkerStore, RedisMarkerStore
from larder.tests.utils.factories import add_subscription, add_user


def _runtime(session_factory, **kwargs) -> NotificationRuntime:  # noqa: ANN001, ANN003
    settings = Settings(email_channel="fake", push_channel="fake", marker_store="memory", notify_shutdown_grace_s=1.0)
    kwargs.setdefault("email_channel", FakeChannel(ChannelKind.EMAIL))
    kwargs.setdefault("push_channel", FakeChannel(ChannelKind.PUSH))
    return NotificationRuntime(
        settings=settings,
        session_factory=session_factory,
        markers=InMemoryMarkerStore(),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_runtime_routes_messages_by_channel(session_factory) -> None:
    push = FakeChannel(ChannelKind.PUSH)
    runtime = _runtime(session_factory, push_channel=push, jobs=[])
    runtime.start()
    message = NotificationMessage(
        recipient="https://push.example.com/x",
        channel=ChannelKind.PUSH,
        payload=PushPayload(title="t", body="b"),
        credentials=PushCredentials(p256dh="k", auth="a"),
    )
    assert runtime.enqueue(message)
    deadline = time.monotonic() + 2
    while not push.sent and time.monotonic() < deadline:
        await asyncio.sleep(0.01)
    await runtime.stop()
    assert push.sent == [message]
    assert runtime.status()["stopping"] is True


@pytest.mark.asyncio
async def test_stop_finishes_within_grace_with_schedulers_running(session_factory) -> None:
    runtime = _runtime(session_factory)
    assert [scheduler.job.name for scheduler in runtime.schedulers] == ["weekly_push", "weekly_email", "shopping_list"]
    runtime.start()
    await asyncio.sleep(0.05)
    started = time.monotonic()
    await runtime.stop()
    assert time.monotonic() - started < 1.0
    assert not runtime.started
    assert runtime.enqueue(
        NotificationMessage(recipient="x", channel=ChannelKind.PUSH, payload=PushPayload(title="t", body="b"))
    ) is False


@pytest.mark.asyncio
async def test_gone_subscription_is_soft_deleted(session_factory) -> None:
    async with session_factory() as session:
        await add_user(session, 1, push=True)
        subscription = await add_subscription(session, 1, endpoint="https://push.example.com/gone")
        await session.commit()

    push = FakeChannel(ChannelKind.PUSH, gone_recipients={"https://push.example.com/gone"})
    runtime = _runtime(session_factory, push_channel=push, jobs=[])
    runtime.start()
    runtime.enqueue(
        NotificationMessage(
            recipient="https://push.example.com/gone",
            channel=ChannelKind.PUSH,
            payload=PushPayload(title="t", body="b"),
            user_id=1,
            credentials=PushCredentials(p256dh="k", auth="a", subscription_id=subscription.id),
        )
    )

    deadline = time.monotonic() + 2
    deleted = False
    while not deleted and time.monotonic() < deadline:
        await asyncio.sleep(0.01)
        async with session_factory() as session:
            row = (
                await session.execute(select(PushSubscription).where(PushSubscription.id == subscription.id))
            ).scalar_one()
            deleted = row.is_deleted
    await runtime.stop()

    assert deleted
    assert row.record_change["last_modified_by"] == -1
    assert len(push.attempts) == 1


class _ClosableRedis:
    def __init__(self) -> None:
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_stop_closes_channel_and_marker_clients(session_factory) -> None:
    settings = Settings(
        email_channel="relay",
        email_relay_url="https://mail.example.com",
        push_channel="fake",
        marker_store="redis",
        notify_shutdown_grace_s=1.0,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(202)))
    redis = _ClosableRedis()
    runtime = NotificationRuntime(
        settings=settings,
        session_factory=session_factory,
        email_channel=RelayEmailChannel(settings, client=client),
        push_channel=FakeChannel(ChannelKind.PUSH),
        markers=RedisMarkerStore(redis),
        jobs=[],
    )
    runtime.start()
    await runtime.stop()
    assert client.is_closed
    assert redis.closed
