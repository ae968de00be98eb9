from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from larder.domain.messages import NotificationMessage
from larder.services.scheduling.markers import MarkerStore
from larder.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Enqueue = Callable[[NotificationMessage], bool]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PlannedNotification:
    message: NotificationMessage
    marker_key: str


@dataclass
class CycleReport:
    job: str
    candidates: int = 0
    enqueued: int = 0
    skipped: int = 0
    failed: int = 0


class NotificationJob(Protocol):
    name: str
    interval_s: float

    async def list_candidates(self, session: AsyncSession, now: datetime) -> Sequence[Any]:
        ...

    async def build_notifications(
        self, session: AsyncSession, candidate: Any, now: datetime
    ) -> list[PlannedNotification]:
        ...

    async def on_enqueued(self, session: AsyncSession, planned: PlannedNotification, now: datetime) -> None:
        ...


class RecurringScheduler:
    """Run one notification job on a fixed cadence.

    A cycle loads candidates in one batch, then handles each candidate in
    isolation: build its notifications, skip those whose marker already exists,
    enqueue the rest and record their markers. A crash between enqueue and the
    marker write can repeat a send at most once.
    """

    def __init__(
        self,
        *,
        job: NotificationJob,
        session_factory: async_sessionmaker[AsyncSession],
        markers: MarkerStore,
        enqueue: Enqueue,
        marker_ttl_s: int,
        shutdown_event: asyncio.Event | None = None,
        error_backoff_s: float = 300.0,
    ) -> None:
        self.job = job
        self._session_factory = session_factory
        self._markers = markers
        self._enqueue = enqueue
        self._marker_ttl_s = marker_ttl_s
        self.shutdown_event = shutdown_event or asyncio.Event()
        self.error_backoff_s = error_backoff_s
        self.last_report: CycleReport | None = None

    async def run_cycle(self, now: datetime | None = None) -> CycleReport:
        now = now or _utc_now()
        report = CycleReport(job=self.job.name)
        async with self._session_factory() as session:
            candidates = await self.job.list_candidates(session, now)
            report.candidates = len(candidates)
            for candidate in candidates:
                if self.shutdown_event.is_set():
                    break
                try:
                    await self._process_candidate(session, candidate, now, report)
                except Exception:  # noqa: BLE001 - one bad recipient must not stop the scan.
                    report.failed += 1
                    increment_counter("scheduler_candidate_failures_total")
                    logger.exception("scheduler_candidate_failed job=%s", self.job.name)
                    await session.rollback()
        self.last_report = report
        logger.info(
            "scheduler_cycle_completed job=%s candidates=%s enqueued=%s skipped=%s failed=%s",
            report.job,
            report.candidates,
            report.enqueued,
            report.skipped,
            report.failed,
        )
        return report

    async def _process_candidate(
        self,
        session: AsyncSession,
        candidate: Any,
        now: datetime,
        report: CycleReport,
    ) -> None:
        planned_items = await self.job.build_notifications(session, candidate, now)
        for planned in planned_items:
            if await self._markers.exists(planned.marker_key):
                report.skipped += 1
                continue
            if not self._enqueue(planned.message):
                report.failed += 1
                continue
            await self._markers.record(planned.marker_key, ttl_s=self._marker_ttl_s)
            report.enqueued += 1
            await self.job.on_enqueued(session, planned, now)

    async def run_forever(self) -> None:
        logger.info("scheduler_started job=%s interval_s=%s", self.job.name, self.job.interval_s)
        while not self.shutdown_event.is_set():
            wait_s = float(self.job.interval_s)
            try:
                await self.run_cycle()
            except Exception:  # noqa: BLE001 - keep the loop alive while surfacing errors in logs.
                logger.exception("scheduler_cycle_failed job=%s", self.job.name)
                wait_s = float(self.error_backoff_s)
            if await self._sleep(wait_s):
                break
        logger.info("scheduler_stopped job=%s", self.job.name)

    async def _sleep(self, seconds: float) -> bool:
        # True when shutdown was signalled during the wait.
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True
