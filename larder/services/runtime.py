from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from larder.core.config import Settings, get_settings
from larder.domain.messages import ChannelKind, NotificationMessage
from larder.persistence.changes import ChangeContext
from larder.persistence.db import SessionLocal
from larder.persistence.repos.recipients import soft_delete_subscription
from larder.providers.channels.base import ChannelAdapter
from larder.providers.channels.factory import get_email_channel, get_push_channel
from larder.services.delivery.queue import NotificationQueue
from larder.services.delivery.retry import RetryPolicy
from larder.services.delivery.worker import DeliveryWorker, PermanentFailureHook
from larder.services.scheduling.jobs import build_jobs
from larder.services.scheduling.markers import MarkerStore, get_marker_store
from larder.services.scheduling.scheduler import NotificationJob, RecurringScheduler


logger = logging.getLogger(__name__)


class NotificationRuntime:
    """Own the per-channel queues and workers plus one scheduler per job.

    Components only talk through the queues and the data store. A single
    shutdown event stops them all: it wakes blocked dequeues, cuts backoff waits
    and ends scheduler sleeps.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        email_channel: ChannelAdapter | None = None,
        push_channel: ChannelAdapter | None = None,
        markers: MarkerStore | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        jobs: list[NotificationJob] | None = None,
        policy: RetryPolicy | None = None,
        on_permanent_failure: PermanentFailureHook | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.shutdown_event = asyncio.Event()
        self._session_factory = session_factory or SessionLocal
        policy = policy or RetryPolicy.from_settings(self.settings)
        self._adapters: dict[ChannelKind, ChannelAdapter] = {
            ChannelKind.EMAIL: email_channel or get_email_channel(self.settings),
            ChannelKind.PUSH: push_channel or get_push_channel(self.settings),
        }
        self.queues: dict[ChannelKind, NotificationQueue] = {
            kind: NotificationQueue(kind, maxsize=self.settings.notify_queue_maxsize) for kind in ChannelKind
        }
        self.workers: dict[ChannelKind, DeliveryWorker] = {
            kind: DeliveryWorker(
                queue=self.queues[kind],
                adapter=self._adapters[kind],
                policy=policy,
                shutdown_event=self.shutdown_event,
                pool_size=self.settings.notify_worker_pool_size,
                on_permanent_failure=on_permanent_failure,
                on_gone=self._on_subscription_gone if kind is ChannelKind.PUSH else None,
            )
            for kind in ChannelKind
        }
        self.markers = markers or get_marker_store(self.settings)
        self.schedulers = [
            RecurringScheduler(
                job=job,
                session_factory=self._session_factory,
                markers=self.markers,
                enqueue=self.enqueue,
                marker_ttl_s=self.settings.marker_ttl_s,
                shutdown_event=self.shutdown_event,
                error_backoff_s=self.settings.scheduler_error_backoff_s,
            )
            for job in (build_jobs(self.settings) if jobs is None else jobs)
        ]
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    def enqueue(self, message: NotificationMessage) -> bool:
        return self.queues[message.channel].enqueue(message)

    def start(self, *, with_schedulers: bool = True) -> None:
        if self._tasks:
            return
        for worker in self.workers.values():
            self._tasks.append(worker.start())
        if with_schedulers:
            for scheduler in self.schedulers:
                self._tasks.append(
                    asyncio.create_task(scheduler.run_forever(), name=f"scheduler-{scheduler.job.name}")
                )
        logger.info(
            "notification_runtime_started workers=%s schedulers=%s",
            len(self.workers),
            len(self.schedulers) if with_schedulers else 0,
        )

    async def run_until_stopped(self) -> None:
        self.start()
        await self.shutdown_event.wait()
        await self.stop()

    async def stop(self, grace_s: float | None = None) -> None:
        grace_s = self.settings.notify_shutdown_grace_s if grace_s is None else grace_s
        self.shutdown_event.set()
        for queue in self.queues.values():
            queue.shutdown()
        if self._tasks:
            done, pending = await asyncio.wait(self._tasks, timeout=max(0.0, grace_s))
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("notification_runtime_stop_timeout cancelled=%s", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.error("notification_runtime_task_failed task=%s", task.get_name(), exc_info=task.exception())
            self._tasks = []
        await self._close_clients()
        logger.info("notification_runtime_stopped")

    async def _close_clients(self) -> None:
        # Adapters and marker stores may hold network clients; the others have no aclose.
        for resource in (*self._adapters.values(), self.markers):
            close = getattr(resource, "aclose", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:  # noqa: BLE001 - shutdown continues past a failing client.
                logger.exception("notification_runtime_close_failed resource=%s", type(resource).__name__)

    def status(self) -> dict[str, Any]:
        return {
            "stopping": self.shutdown_event.is_set(),
            "queues": {kind.value: queue.size for kind, queue in self.queues.items()},
            "workers": {
                kind.value: {"running": worker.running, "in_flight": worker.in_flight}
                for kind, worker in self.workers.items()
            },
            "schedulers": [scheduler.job.name for scheduler in self.schedulers],
        }

    async def _on_subscription_gone(self, message: NotificationMessage) -> None:
        credentials = message.credentials
        if credentials is None or credentials.subscription_id is None:
            return
        async with self._session_factory() as session:
            removed = await soft_delete_subscription(session, credentials.subscription_id, ChangeContext())
        if removed:
            logger.info(
                "push_subscription_removed subscription_id=%s user_id=%s",
                credentials.subscription_id,
                message.user_id,
            )
