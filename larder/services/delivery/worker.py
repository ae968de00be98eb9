from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from larder.core.errors import SubscriptionGoneError
from larder.domain.messages import NotificationMessage
from larder.providers.channels.base import ChannelAdapter
from larder.services.delivery.queue import NotificationQueue
from larder.services.delivery.retry import RetryPolicy
from larder.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PermanentFailureHook = Callable[[NotificationMessage, Exception], Awaitable[None]]
GoneHook = Callable[[NotificationMessage], Awaitable[None]]


class DeliveryWorker:
    """Drain one channel queue through its adapter with bounded retries.

    Each consumer task handles one message at a time: send, and on failure either
    wait the backoff and re-enqueue with the next attempt number, or drop the
    message as a permanent failure. The shared shutdown event interrupts backoff
    waits; messages whose wait was interrupted are not re-enqueued.
    """

    def __init__(
        self,
        *,
        queue: NotificationQueue,
        adapter: ChannelAdapter,
        policy: RetryPolicy | None = None,
        shutdown_event: asyncio.Event | None = None,
        pool_size: int = 1,
        on_permanent_failure: PermanentFailureHook | None = None,
        on_gone: GoneHook | None = None,
    ) -> None:
        self.queue = queue
        self.adapter = adapter
        self.policy = policy or RetryPolicy()
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.pool_size = max(1, int(pool_size))
        self._on_permanent_failure = on_permanent_failure
        self._on_gone = on_gone
        self._task: asyncio.Task[None] | None = None
        self.in_flight = 0

    @property
    def channel(self) -> str:
        return self.queue.channel.value

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"delivery-worker-{self.channel}")
        return self._task

    async def run(self) -> None:
        logger.info("delivery_worker_started channel=%s pool_size=%s", self.channel, self.pool_size)
        await asyncio.gather(*(self._consume(index) for index in range(self.pool_size)))
        logger.info("delivery_worker_stopped channel=%s", self.channel)

    async def stop(self, grace_s: float = 5.0) -> None:
        # Signal, let consumers drain their current send, then cancel stragglers.
        self.shutdown_event.set()
        self.queue.shutdown()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=max(0.0, grace_s))
        except asyncio.TimeoutError:
            logger.warning("delivery_worker_stop_timeout channel=%s grace_s=%s", self.channel, grace_s)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _consume(self, index: int) -> None:
        while True:
            message = await self.queue.dequeue()
            if message is None:
                return
            self.in_flight += 1
            try:
                await self.process(message)
            except Exception:  # noqa: BLE001 - a single message must never kill the consumer.
                logger.exception(
                    "delivery_unexpected_error channel=%s consumer=%s message_id=%s",
                    self.channel,
                    index,
                    message.message_id,
                )
            finally:
                self.in_flight -= 1

    async def process(self, message: NotificationMessage) -> bool:
        """Deliver one message; return True when the adapter accepted it."""
        try:
            await self.adapter.send(message)
        except SubscriptionGoneError as exc:
            logger.info(
                "delivery_subscription_gone channel=%s message_id=%s user_id=%s endpoint=%s",
                self.channel,
                message.message_id,
                message.user_id,
                exc.endpoint,
            )
            increment_counter("notification_subscriptions_gone_total")
            if self._on_gone is not None:
                await self._run_hook("on_gone", self._on_gone(message))
            return False
        except Exception as exc:  # noqa: BLE001 - adapters surface transport errors of any type.
            await self._handle_failure(message, exc)
            return False
        increment_counter(f"notification_sent_total.{self.channel}")
        logger.info(
            "delivery_succeeded channel=%s kind=%s message_id=%s attempt=%s",
            self.channel,
            message.kind,
            message.message_id,
            message.attempt,
        )
        return True

    async def _handle_failure(self, message: NotificationMessage, exc: Exception) -> None:
        decision = self.policy.decide(message.attempt)
        if not decision.should_retry:
            logger.error(
                "delivery_failed_permanently channel=%s kind=%s message_id=%s attempts=%s error=%s",
                self.channel,
                message.kind,
                message.message_id,
                message.attempt + 1,
                type(exc).__name__,
            )
            increment_counter("notification_permanent_failures_total")
            if self._on_permanent_failure is not None:
                await self._run_hook("on_permanent_failure", self._on_permanent_failure(message, exc))
            return

        increment_counter("notification_retries_total")
        logger.warning(
            "delivery_failed_retrying channel=%s message_id=%s attempt=%s delay_s=%s error=%s",
            self.channel,
            message.message_id,
            message.attempt,
            decision.delay,
            type(exc).__name__,
        )
        if not await self._wait_backoff(decision.delay):
            logger.info(
                "delivery_retry_abandoned reason=shutdown channel=%s message_id=%s attempt=%s",
                self.channel,
                message.message_id,
                message.attempt,
            )
            return
        self.queue.enqueue(message.with_attempt(message.attempt + 1))

    async def _wait_backoff(self, delay: float) -> bool:
        # True when the full delay elapsed, False when shutdown cut it short.
        if self.shutdown_event.is_set():
            return False
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    async def _run_hook(self, name: str, hook: Awaitable[None]) -> None:
        try:
            await hook
        except Exception:  # noqa: BLE001 - hook failures are reported, never retried.
            logger.exception("delivery_hook_failed channel=%s hook=%s", self.channel, name)
