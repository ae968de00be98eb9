from __future__ import annotations

import asyncio
import time

import pytest

from larder.domain.messages import ChannelKind, EmailPayload, NotificationMessage, PushCredentials, PushPayload
from larder.providers.channels.fake import FakeChannel
from larder.services.delivery.queue import NotificationQueue
from larder.services.delivery.retry import RetryPolicy
from larder.services.delivery.worker import DeliveryWorker
from larder.services.telemetry import counters_snapshot


def _email() -> NotificationMessage:
    return NotificationMessage(
        recipient="user@example.com",
        channel=ChannelKind.EMAIL,
        payload=EmailPayload(subject="Weekly", html_body="<p>hi</p>", text_body="hi"),
        kind="weekly_email",
    )


async def _wait_until(predicate, timeout: float = 2.0) -> None:  # noqa: ANN001
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _worker(channel: FakeChannel, **kwargs) -> DeliveryWorker:  # noqa: ANN003
    return DeliveryWorker(queue=NotificationQueue(channel.kind), adapter=channel, **kwargs)


@pytest.mark.asyncio
async def test_successful_send_is_delivered_once() -> None:
    channel = FakeChannel(ChannelKind.EMAIL)
    worker = _worker(channel)
    worker.start()
    worker.queue.enqueue(_email())
    await _wait_until(lambda: len(channel.sent) == 1)
    await worker.stop(grace_s=1)
    assert len(channel.attempts) == 1
    assert counters_snapshot()["notification_sent_total.email"] == 1
    assert not worker.running


@pytest.mark.asyncio
async def test_failing_message_is_sent_three_times_with_fixed_backoff(monkeypatch) -> None:
    channel = FakeChannel(ChannelKind.EMAIL, fail_always=True)
    failed: list[NotificationMessage] = []
    done = asyncio.Event()

    async def _on_permanent_failure(message: NotificationMessage, exc: Exception) -> None:
        failed.append(message)
        done.set()

    worker = _worker(channel, on_permanent_failure=_on_permanent_failure)
    delays: list[float] = []

    async def _record_backoff(delay: float) -> bool:
        delays.append(delay)
        return True

    monkeypatch.setattr(worker, "_wait_backoff", _record_backoff)
    worker.start()
    worker.queue.enqueue(_email())
    await asyncio.wait_for(done.wait(), timeout=2)
    await worker.stop(grace_s=1)

    assert [message.attempt for _, message in channel.attempts] == [0, 1, 2]
    # Sends at t=0, t=2 and t=6 seconds.
    assert delays == [2.0, 4.0]
    assert sum(delays) == 6.0
    assert len(failed) == 1 and failed[0].attempt == 2
    counters = counters_snapshot()
    assert counters["notification_retries_total"] == 2
    assert counters["notification_permanent_failures_total"] == 1


@pytest.mark.asyncio
async def test_retry_timeline_with_scaled_schedule() -> None:
    channel = FakeChannel(ChannelKind.EMAIL, fail_first=2)
    worker = _worker(channel, policy=RetryPolicy(schedule=(0.05, 0.1, 0.2)))
    worker.start()
    worker.queue.enqueue(_email())
    await _wait_until(lambda: len(channel.sent) == 1)
    await worker.stop(grace_s=1)

    times = [ts for ts, _ in channel.attempts]
    assert len(times) == 3
    assert times[1] - times[0] >= 0.045
    assert times[2] - times[1] >= 0.095
    assert channel.sent[0].attempt == 2


@pytest.mark.asyncio
async def test_retry_keeps_identity_and_content() -> None:
    channel = FakeChannel(ChannelKind.EMAIL, fail_first=1)
    worker = _worker(channel, policy=RetryPolicy(schedule=(0.01,)))
    original = _email()
    worker.start()
    worker.queue.enqueue(original)
    await _wait_until(lambda: len(channel.sent) == 1)
    await worker.stop(grace_s=1)
    retried = channel.sent[0]
    assert retried.message_id == original.message_id
    assert retried.payload == original.payload
    assert retried.attempt == 1


@pytest.mark.asyncio
async def test_shutdown_during_backoff_abandons_the_retry() -> None:
    channel = FakeChannel(ChannelKind.EMAIL, fail_always=True)
    worker = _worker(channel, policy=RetryPolicy(schedule=(30.0,)))
    worker.start()
    worker.queue.enqueue(_email())
    await _wait_until(lambda: len(channel.attempts) == 1)
    started = time.monotonic()
    await worker.stop(grace_s=2)
    assert time.monotonic() - started < 1.0
    assert len(channel.attempts) == 1
    assert worker.queue.size == 0
    assert "notification_permanent_failures_total" not in counters_snapshot()


@pytest.mark.asyncio
async def test_gone_subscription_is_terminal_and_reported() -> None:
    endpoint = "https://push.example.com/send/gone"
    channel = FakeChannel(ChannelKind.PUSH, gone_recipients={endpoint})
    gone: list[NotificationMessage] = []

    async def _on_gone(message: NotificationMessage) -> None:
        gone.append(message)

    worker = _worker(channel, on_gone=_on_gone)
    message = NotificationMessage(
        recipient=endpoint,
        channel=ChannelKind.PUSH,
        payload=PushPayload(title="t", body="b"),
        credentials=PushCredentials(p256dh="k", auth="a", subscription_id=7),
    )
    worker.start()
    worker.queue.enqueue(message)
    await _wait_until(lambda: len(gone) == 1)
    await worker.stop(grace_s=1)
    assert len(channel.attempts) == 1
    assert gone[0].credentials.subscription_id == 7
    assert "notification_retries_total" not in counters_snapshot()


@pytest.mark.asyncio
async def test_failing_hook_does_not_kill_the_consumer() -> None:
    channel = FakeChannel(ChannelKind.EMAIL, fail_always=True)

    async def _broken_hook(message: NotificationMessage, exc: Exception) -> None:
        raise RuntimeError("hook exploded")

    worker = _worker(channel, policy=RetryPolicy(max_attempts=1), on_permanent_failure=_broken_hook)
    worker.start()
    worker.queue.enqueue(_email())
    worker.queue.enqueue(_email())
    await _wait_until(lambda: len(channel.attempts) == 2)
    assert worker.running
    await worker.stop(grace_s=1)


@pytest.mark.asyncio
async def test_backoff_does_not_block_other_consumers_in_the_pool() -> None:
    channel = FakeChannel(ChannelKind.EMAIL, fail_first=1)
    worker = _worker(channel, policy=RetryPolicy(schedule=(30.0,)), pool_size=2)
    worker.start()
    worker.queue.enqueue(_email())
    await _wait_until(lambda: len(channel.attempts) == 1)
    worker.queue.enqueue(_email())
    await _wait_until(lambda: len(channel.sent) == 1)
    await worker.stop(grace_s=1)


@pytest.mark.asyncio
async def test_end_to_end_two_failures_then_success_timeline(monkeypatch) -> None:
    channel = FakeChannel(ChannelKind.EMAIL, fail_first=2)
    worker = _worker(channel)
    elapsed: list[float] = [0.0]

    async def _virtual_backoff(delay: float) -> bool:
        elapsed.append(elapsed[-1] + delay)
        return True

    monkeypatch.setattr(worker, "_wait_backoff", _virtual_backoff)
    worker.start()
    worker.queue.enqueue(_email())
    await _wait_until(lambda: len(channel.sent) == 1)
    await worker.stop(grace_s=1)

    # Virtual send times: t=0 (fail), t=2 (fail), t=6 (success).
    assert elapsed == [0.0, 2.0, 6.0]
    assert len(channel.attempts) == 3
    assert channel.sent[0].attempt == 2
    assert "notification_permanent_failures_total" not in counters_snapshot()
