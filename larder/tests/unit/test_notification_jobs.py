from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import SQLAlchemyError

from larder.core.config import Settings
from larder.domain.messages import ChannelKind
from larder.domain.models import PushSubscription
from larder.services.delivery.queue import NotificationQueue
from larder.services.scheduling import jobs as jobs_module
from larder.services.scheduling.jobs import (
    ShoppingListActivityJob,
    WeeklyEmailSummaryJob,
    WeeklyPushDigestJob,
    build_jobs,
    to_local,
)
from larder.services.scheduling.markers import InMemoryMarkerStore
from larder.services.scheduling.scheduler import RecurringScheduler
from larder.tests.utils.factories import (
    MONDAY_0730_BUDAPEST,
    add_item,
    add_item_added_activity,
    add_shopping_list,
    add_subscription,
    add_user,
)


def _settings(**overrides) -> Settings:  # noqa: ANN003
    return Settings(email_channel="fake", push_channel="fake", marker_store="memory", **overrides)


def _scheduler(job, session_factory, queue: NotificationQueue) -> RecurringScheduler:  # noqa: ANN001
    return RecurringScheduler(
        job=job,
        session_factory=session_factory,
        markers=InMemoryMarkerStore(),
        enqueue=queue.enqueue,
        marker_ttl_s=3600,
    )


def test_to_local_falls_back_to_default_zone() -> None:
    assert to_local(MONDAY_0730_BUDAPEST, "Not/AZone", "Europe/Budapest").hour == 7
    assert to_local(MONDAY_0730_BUDAPEST, None, "Europe/Budapest").hour == 7
    assert to_local(MONDAY_0730_BUDAPEST, "America/New_York", "Europe/Budapest").hour == 1


def test_build_jobs_honours_toggles() -> None:
    names = [job.name for job in build_jobs(_settings(weekly_email_enabled=False))]
    assert names == ["weekly_push", "shopping_list"]


@pytest.mark.asyncio
async def test_weekly_push_sends_one_per_subscription_at_local_monday_seven(session_factory) -> None:
    async with session_factory() as session:
        await add_user(session, 1, push=True, push_weekly=True, family_id=10)
        await add_subscription(session, 1, endpoint="https://push.example.com/a")
        await add_subscription(session, 1, endpoint="https://push.example.com/b")
        await add_item(session, user_id=1, expiration_at=MONDAY_0730_BUDAPEST + timedelta(days=3))
        await add_item(session, user_id=None, family_id=10, expiration_at=MONDAY_0730_BUDAPEST - timedelta(days=1))
        await add_item(session, user_id=1, expiration_at=MONDAY_0730_BUDAPEST + timedelta(days=30))
        await add_item(session, user_id=1, expiration_at=MONDAY_0730_BUDAPEST, consumed=True)
        await session.commit()

    queue = NotificationQueue(ChannelKind.PUSH)
    report = await _scheduler(WeeklyPushDigestJob(_settings()), session_factory, queue).run_cycle(MONDAY_0730_BUDAPEST)

    assert report.enqueued == 2
    first = await queue.dequeue()
    assert first.kind == "weekly_push"
    assert first.payload.title == "Weekly Summary"
    assert first.payload.body == "2 products will expire within the next 14 days."
    assert first.credentials is not None and first.credentials.subscription_id is not None

    async with session_factory() as session:
        rows = (await session.execute(PushSubscription.__table__.select())).all()
        assert all(row.last_weekly_notification_sent_at is not None for row in rows)


@pytest.mark.asyncio
async def test_weekly_push_is_sent_once_per_week(session_factory) -> None:
    async with session_factory() as session:
        await add_user(session, 1, push=True, push_weekly=True)
        await add_subscription(session, 1)
        await session.commit()

    queue = NotificationQueue(ChannelKind.PUSH)
    scheduler = _scheduler(WeeklyPushDigestJob(_settings()), session_factory, queue)
    await scheduler.run_cycle(MONDAY_0730_BUDAPEST)
    await scheduler.run_cycle(MONDAY_0730_BUDAPEST + timedelta(minutes=20))
    assert queue.size == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "now",
    [
        MONDAY_0730_BUDAPEST + timedelta(hours=1),
        MONDAY_0730_BUDAPEST + timedelta(days=1),
    ],
)
async def test_weekly_push_waits_for_the_send_slot(session_factory, now: datetime) -> None:
    async with session_factory() as session:
        await add_user(session, 1, push=True, push_weekly=True)
        await add_subscription(session, 1)
        await session.commit()

    queue = NotificationQueue(ChannelKind.PUSH)
    report = await _scheduler(WeeklyPushDigestJob(_settings()), session_factory, queue).run_cycle(now)
    assert report.candidates == 1
    assert report.enqueued == 0


@pytest.mark.asyncio
async def test_weekly_push_requires_weekly_preference_and_subscription(session_factory) -> None:
    async with session_factory() as session:
        await add_user(session, 1, push=True, push_weekly=False)
        await add_subscription(session, 1)
        await add_user(session, 2, push=True, push_weekly=True)
        await session.commit()

    queue = NotificationQueue(ChannelKind.PUSH)
    report = await _scheduler(WeeklyPushDigestJob(_settings()), session_factory, queue).run_cycle(MONDAY_0730_BUDAPEST)
    # User 2 has no subscription and is not a candidate at all.
    assert report.candidates == 1
    assert report.enqueued == 0


@pytest.mark.asyncio
async def test_weekly_push_uses_recipient_language(session_factory) -> None:
    async with session_factory() as session:
        await add_user(session, 1, push=True, push_weekly=True, language="hu")
        await add_subscription(session, 1)
        await session.commit()

    queue = NotificationQueue(ChannelKind.PUSH)
    await _scheduler(WeeklyPushDigestJob(_settings()), session_factory, queue).run_cycle(MONDAY_0730_BUDAPEST)
    message = await queue.dequeue()
    assert message.payload.title == "Heti összefoglaló"
    assert message.payload.body == "Nincs lejáró termék a készletedben. Szép hetet!"


@pytest.mark.asyncio
async def test_weekly_email_partitions_expired_and_expiring(session_factory) -> None:
    async with session_factory() as session:
        await add_user(session, 3, email_weekly=True, name="Dora")
        await add_item(session, user_id=3, name="Yogurt", expiration_at=MONDAY_0730_BUDAPEST - timedelta(days=2))
        await add_item(session, user_id=3, name="Cheese", expiration_at=MONDAY_0730_BUDAPEST + timedelta(days=5))
        await session.commit()

    queue = NotificationQueue(ChannelKind.EMAIL)
    scheduler = _scheduler(WeeklyEmailSummaryJob(_settings()), session_factory, queue)
    report = await scheduler.run_cycle(MONDAY_0730_BUDAPEST)
    assert report.enqueued == 1

    message = await queue.dequeue()
    assert message.recipient == "user3@example.com"
    assert message.payload.subject == "Larder - Weekly Summary"
    text = message.payload.text_body
    assert text.index("Expired products") < text.index("Yogurt") < text.index("Expiring soon") < text.index("Cheese")
    assert "Hi Dora!" in text

    # last_weekly_email_sent_at now blocks a second send this week.
    again = await scheduler.run_cycle(MONDAY_0730_BUDAPEST + timedelta(minutes=5))
    assert again.enqueued == 0


@pytest.mark.asyncio
async def test_shopping_list_session_notifies_non_contributors_after_idle_timeout(session_factory) -> None:
    start = datetime(2026, 10, 14, 16, 0, tzinfo=timezone.utc)
    async with session_factory() as session:
        await add_user(session, 1, family_id=5, push=True)
        await add_user(session, 2, family_id=5, push=True, language="de")
        await add_user(session, 3, family_id=5, push=False)
        await add_subscription(session, 1)
        await add_subscription(session, 2)
        await add_subscription(session, 3)
        shopping_list = await add_shopping_list(session, family_id=5, name="Wochenliste")
        await add_item_added_activity(session, shopping_list=shopping_list, user_id=1, at=start + timedelta(seconds=10))
        await add_item_added_activity(session, shopping_list=shopping_list, user_id=1, at=start + timedelta(seconds=70))
        await session.commit()

    job = ShoppingListActivityJob(_settings())
    queue = NotificationQueue(ChannelKind.PUSH)
    scheduler = _scheduler(job, session_factory, queue)

    early = await scheduler.run_cycle(start + timedelta(minutes=2))
    assert early.enqueued == 0
    assert shopping_list.id in job.sessions

    late = await scheduler.run_cycle(start + timedelta(minutes=7))
    assert late.enqueued == 1
    assert job.sessions == {}
    message = await queue.dequeue()
    assert message.user_id == 2
    assert message.payload.title == "Einkaufsliste aktualisiert"
    assert message.payload.body == '2 neue Elemente wurden zur Einkaufsliste "Wochenliste" hinzugefügt.'


@pytest.mark.asyncio
async def test_shopping_list_ignores_single_member_families(session_factory) -> None:
    start = datetime(2026, 10, 14, 16, 0, tzinfo=timezone.utc)
    async with session_factory() as session:
        await add_user(session, 1, family_id=8, push=True)
        await add_subscription(session, 1)
        shopping_list = await add_shopping_list(session, family_id=8)
        await add_item_added_activity(session, shopping_list=shopping_list, user_id=1, at=start + timedelta(seconds=5))
        await session.commit()

    job = ShoppingListActivityJob(_settings())
    queue = NotificationQueue(ChannelKind.PUSH)
    scheduler = _scheduler(job, session_factory, queue)
    await scheduler.run_cycle(start + timedelta(minutes=1))
    assert job.sessions == {}


@pytest.mark.asyncio
async def test_shopping_list_window_is_reread_after_a_failed_scan(session_factory, monkeypatch) -> None:
    start = datetime(2026, 10, 14, 16, 0, tzinfo=timezone.utc)
    async with session_factory() as session:
        await add_user(session, 1, family_id=6, push=True)
        await add_user(session, 2, family_id=6, push=True)
        await add_subscription(session, 2)
        shopping_list = await add_shopping_list(session, family_id=6)
        await add_item_added_activity(session, shopping_list=shopping_list, user_id=1, at=start + timedelta(seconds=10))
        await session.commit()

    original = jobs_module.families_with_min_members
    calls = {"count": 0}

    async def _flaky_families(session, family_ids, **kwargs):  # noqa: ANN001, ANN003
        calls["count"] += 1
        if calls["count"] == 1:
            raise SQLAlchemyError("connection reset")
        return await original(session, family_ids, **kwargs)

    monkeypatch.setattr(jobs_module, "families_with_min_members", _flaky_families)
    job = ShoppingListActivityJob(_settings())
    queue = NotificationQueue(ChannelKind.PUSH)
    scheduler = _scheduler(job, session_factory, queue)

    with pytest.raises(SQLAlchemyError):
        await scheduler.run_cycle(start + timedelta(minutes=1))
    await scheduler.run_cycle(start + timedelta(minutes=2))
    assert shopping_list.id in job.sessions

    closed = await scheduler.run_cycle(start + timedelta(minutes=8))
    assert closed.enqueued == 1
    assert queue.size == 1


@pytest.mark.asyncio
async def test_shopping_list_session_stays_open_at_exact_timeout(session_factory) -> None:
    start = datetime(2026, 10, 14, 16, 0, tzinfo=timezone.utc)
    async with session_factory() as session:
        await add_user(session, 1, family_id=7, push=True)
        await add_user(session, 2, family_id=7, push=True)
        await add_subscription(session, 2)
        shopping_list = await add_shopping_list(session, family_id=7)
        await add_item_added_activity(session, shopping_list=shopping_list, user_id=1, at=start)
        await session.commit()

    job = ShoppingListActivityJob(_settings())
    queue = NotificationQueue(ChannelKind.PUSH)
    scheduler = _scheduler(job, session_factory, queue)

    await scheduler.run_cycle(start + timedelta(minutes=1))
    boundary = await scheduler.run_cycle(start + timedelta(minutes=5))
    assert boundary.enqueued == 0
    assert shopping_list.id in job.sessions

    after = await scheduler.run_cycle(start + timedelta(minutes=5, seconds=1))
    assert after.enqueued == 1
