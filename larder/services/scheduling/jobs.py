from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession

from larder.core.config import Settings, get_settings
from larder.domain.messages import ChannelKind, NotificationMessage, PushCredentials
from larder.persistence.changes import ChangeContext
from larder.persistence.repos.inventory import (
    as_utc,
    count_expiring_items,
    list_expiring_items,
    partition_expiring,
)
from larder.persistence.repos.recipients import (
    Recipient,
    list_email_summary_recipients,
    list_family_push_recipients,
    list_live_subscriptions,
    list_push_recipients,
    mark_subscription_weekly_notified,
    mark_weekly_email_sent,
)
from larder.persistence.repos.shopping import families_with_min_members, list_item_add_activities
from larder.services.content import (
    parse_language,
    render_weekly_summary_email,
    shopping_list_push_content,
    weekly_push_content,
)
from larder.services.scheduling.markers import marker_key, weekly_period
from larder.services.scheduling.scheduler import PlannedNotification


logger = logging.getLogger(__name__)

MONDAY = 0


def to_local(now: datetime, time_zone: str | None, default_time_zone: str) -> datetime:
    # Unknown or missing zones fall back to the deployment default.
    for name in (time_zone, default_time_zone):
        if not name:
            continue
        try:
            return now.astimezone(ZoneInfo(name))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown_time_zone time_zone=%s", name)
    return now


def is_weekly_send_slot(local_now: datetime, send_hour: int) -> bool:
    return local_now.weekday() == MONDAY and local_now.hour == send_hour


def subscription_message(
    *,
    subscription,  # noqa: ANN001 - PushSubscription row
    payload,  # noqa: ANN001 - PushPayload
    kind: str,
    user_id: int,
) -> NotificationMessage:
    return NotificationMessage(
        recipient=subscription.endpoint,
        channel=ChannelKind.PUSH,
        payload=payload,
        kind=kind,
        user_id=user_id,
        credentials=PushCredentials(
            p256dh=subscription.p256dh,
            auth=subscription.auth,
            subscription_id=subscription.id,
        ),
    )


class WeeklyPushDigestJob:
    name = "weekly_push"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self.interval_s = float(self._settings.weekly_scan_interval_s)

    async def list_candidates(self, session: AsyncSession, now: datetime) -> list[Recipient]:
        return await list_push_recipients(session)

    async def build_notifications(
        self, session: AsyncSession, candidate: Recipient, now: datetime
    ) -> list[PlannedNotification]:
        settings = self._settings
        local_now = to_local(now, candidate.time_zone, settings.default_time_zone)
        if not is_weekly_send_slot(local_now, settings.notify_send_hour):
            return []
        if not candidate.push_weekly_summary_enabled:
            return []
        period = weekly_period(local_now)
        subscriptions = await list_live_subscriptions(session, candidate.user_id)
        # Skip subscriptions already served this week even if the marker expired early.
        pending = [
            sub
            for sub in subscriptions
            if sub.last_weekly_notification_sent_at is None
            or weekly_period(to_local(as_utc(sub.last_weekly_notification_sent_at), candidate.time_zone, settings.default_time_zone))
            != period
        ]
        if not pending:
            return []
        count = await count_expiring_items(
            session,
            user_id=candidate.user_id,
            family_id=candidate.family_id,
            today=local_now.date(),
            threshold_days=settings.expiring_threshold_days,
        )
        language = parse_language(candidate.language, settings.default_language)
        payload = weekly_push_content(
            language,
            count,
            threshold_days=settings.expiring_threshold_days,
            url=settings.app_base_url,
        )
        return [
            PlannedNotification(
                message=subscription_message(subscription=sub, payload=payload, kind=self.name, user_id=candidate.user_id),
                marker_key=marker_key(self.name, f"sub-{sub.id}", period),
            )
            for sub in pending
        ]

    async def on_enqueued(self, session: AsyncSession, planned: PlannedNotification, now: datetime) -> None:
        credentials = planned.message.credentials
        if credentials is None or credentials.subscription_id is None:
            return
        await mark_subscription_weekly_notified(session, credentials.subscription_id, ChangeContext(at=now))


class WeeklyEmailSummaryJob:
    name = "weekly_email"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self.interval_s = float(self._settings.weekly_scan_interval_s)

    async def list_candidates(self, session: AsyncSession, now: datetime) -> list[Recipient]:
        return await list_email_summary_recipients(session)

    async def build_notifications(
        self, session: AsyncSession, candidate: Recipient, now: datetime
    ) -> list[PlannedNotification]:
        settings = self._settings
        local_now = to_local(now, candidate.time_zone, settings.default_time_zone)
        if not is_weekly_send_slot(local_now, settings.notify_send_hour):
            return []
        period = weekly_period(local_now)
        last_sent = candidate.last_weekly_email_sent_at
        if last_sent is not None and weekly_period(
            to_local(as_utc(last_sent), candidate.time_zone, settings.default_time_zone)
        ) == period:
            return []
        message = await build_weekly_summary_email(session, candidate, local_now, settings)
        return [PlannedNotification(message=message, marker_key=marker_key(self.name, f"user-{candidate.user_id}", period))]

    async def on_enqueued(self, session: AsyncSession, planned: PlannedNotification, now: datetime) -> None:
        if planned.message.user_id is not None:
            await mark_weekly_email_sent(session, planned.message.user_id, ChangeContext(at=now))


async def build_weekly_summary_email(
    session: AsyncSession,
    recipient: Recipient,
    local_now: datetime,
    settings: Settings,
) -> NotificationMessage:
    """Render the weekly summary email for one recipient at their local time."""
    items = await list_expiring_items(
        session,
        user_id=recipient.user_id,
        family_id=recipient.family_id,
        today=local_now.date(),
        threshold_days=settings.expiring_threshold_days,
    )
    expired, expiring_soon = partition_expiring(items)
    payload = render_weekly_summary_email(
        language=parse_language(recipient.language, settings.default_language),
        name=recipient.name,
        expired=expired,
        expiring_soon=expiring_soon,
        today=local_now.date(),
    )
    return NotificationMessage(
        recipient=recipient.email,
        channel=ChannelKind.EMAIL,
        payload=payload,
        kind=WeeklyEmailSummaryJob.name,
        user_id=recipient.user_id,
    )


@dataclass
class ShoppingListSession:
    family_id: int
    shopping_list_id: int
    shopping_list_name: str
    last_activity_at: datetime
    item_count: int = 0
    contributors: set[int] = field(default_factory=set)


class ShoppingListActivityJob:
    """Batch shopping-list item additions into per-list sessions.

    New activities extend the open session of their list. A session idle for
    ``shopping_list_session_timeout_s`` is closed and turned into one push per
    subscription of every family member who did not contribute to it.
    """

    name = "shopping_list"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self.interval_s = float(self._settings.shopping_list_scan_interval_s)
        self.session_timeout = timedelta(seconds=self._settings.shopping_list_session_timeout_s)
        self.sessions: dict[int, ShoppingListSession] = {}
        self._watermark: datetime | None = None

    async def list_candidates(self, session: AsyncSession, now: datetime) -> list[ShoppingListSession]:
        since = self._watermark or now - timedelta(seconds=self.interval_s)
        activities = await list_item_add_activities(session, since=since, until=now)
        eligible = await families_with_min_members(session, {activity.family_id for activity in activities})
        for activity in activities:
            if activity.family_id not in eligible:
                continue
            current = self.sessions.get(activity.shopping_list_id)
            if current is None:
                current = ShoppingListSession(
                    family_id=activity.family_id,
                    shopping_list_id=activity.shopping_list_id,
                    shopping_list_name=activity.shopping_list_name,
                    last_activity_at=activity.timestamp,
                )
                self.sessions[activity.shopping_list_id] = current
            current.item_count += 1
            current.contributors.add(activity.user_id)
            current.last_activity_at = max(current.last_activity_at, activity.timestamp)
        # The watermark moves only after the window is folded into sessions.
        self._watermark = now

        # Closed sessions leave the table now; a failed send is not retried on the next scan.
        closed = [item for item in self.sessions.values() if now - item.last_activity_at > self.session_timeout]
        for item in closed:
            self.sessions.pop(item.shopping_list_id, None)
        return closed

    async def build_notifications(
        self, session: AsyncSession, candidate: ShoppingListSession, now: datetime
    ) -> list[PlannedNotification]:
        settings = self._settings
        recipients = await list_family_push_recipients(
            session,
            family_id=candidate.family_id,
            exclude_user_ids=candidate.contributors,
        )
        session_id = f"{candidate.shopping_list_id}-{int(candidate.last_activity_at.timestamp())}"
        planned: list[PlannedNotification] = []
        for recipient in recipients:
            language = parse_language(recipient.language, settings.default_language)
            payload = shopping_list_push_content(
                language,
                candidate.shopping_list_name,
                candidate.item_count,
                url=settings.app_base_url,
            )
            for sub in await list_live_subscriptions(session, recipient.user_id):
                planned.append(
                    PlannedNotification(
                        message=subscription_message(
                            subscription=sub, payload=payload, kind=self.name, user_id=recipient.user_id
                        ),
                        marker_key=marker_key(self.name, f"sub-{sub.id}", session_id),
                    )
                )
        return planned

    async def on_enqueued(self, session: AsyncSession, planned: PlannedNotification, now: datetime) -> None:
        return None


def build_jobs(settings: Settings | None = None) -> list:
    settings = settings or get_settings()
    jobs: list = []
    if settings.weekly_push_enabled:
        jobs.append(WeeklyPushDigestJob(settings))
    if settings.weekly_email_enabled:
        jobs.append(WeeklyEmailSummaryJob(settings))
    if settings.shopping_list_monitor_enabled:
        jobs.append(ShoppingListActivityJob(settings))
    return jobs
