from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from larder.domain.models import NotificationPreferences, PushSubscription, User
from larder.persistence.changes import ChangeContext, record_change, soft_delete


@dataclass(frozen=True)
class Recipient:
    user_id: int
    family_id: int | None
    email: str
    name: str | None
    time_zone: str | None
    language: str | None
    push_notifications_enabled: bool = False
    push_weekly_summary_enabled: bool = False
    email_weekly_summary_enabled: bool = False
    last_weekly_email_sent_at: datetime | None = None


def _live_subscription_exists():
    return exists().where(
        PushSubscription.user_id == User.id,
        PushSubscription.is_deleted.is_(False),
    )


def _recipient_columns():
    return (
        User.id,
        User.family_id,
        User.email,
        User.name,
        User.time_zone,
        User.language,
        NotificationPreferences.push_notifications_enabled,
        NotificationPreferences.push_weekly_summary_enabled,
        NotificationPreferences.email_weekly_summary_enabled,
        NotificationPreferences.last_weekly_email_sent_at,
    )


def _to_recipient(row) -> Recipient:  # noqa: ANN001 - SQLAlchemy Row
    return Recipient(
        user_id=row[0],
        family_id=row[1],
        email=row[2],
        name=row[3],
        time_zone=row[4],
        language=row[5],
        push_notifications_enabled=bool(row[6]),
        push_weekly_summary_enabled=bool(row[7]),
        email_weekly_summary_enabled=bool(row[8]),
        last_weekly_email_sent_at=row[9],
    )


async def list_push_recipients(session: AsyncSession) -> list[Recipient]:
    # Users with any push preference enabled and at least one live subscription.
    rows = (
        await session.execute(
            select(*_recipient_columns())
            .join(NotificationPreferences, NotificationPreferences.user_id == User.id)
            .where(
                User.is_deleted.is_(False),
                NotificationPreferences.is_deleted.is_(False),
                or_(
                    NotificationPreferences.push_notifications_enabled.is_(True),
                    NotificationPreferences.push_weekly_summary_enabled.is_(True),
                ),
                _live_subscription_exists(),
            )
            .order_by(User.id.asc())
        )
    ).all()
    return [_to_recipient(row) for row in rows]


async def list_email_summary_recipients(session: AsyncSession) -> list[Recipient]:
    rows = (
        await session.execute(
            select(*_recipient_columns())
            .join(NotificationPreferences, NotificationPreferences.user_id == User.id)
            .where(
                User.is_deleted.is_(False),
                NotificationPreferences.is_deleted.is_(False),
                NotificationPreferences.email_weekly_summary_enabled.is_(True),
            )
            .order_by(User.id.asc())
        )
    ).all()
    return [_to_recipient(row) for row in rows]


async def get_recipient(session: AsyncSession, user_id: int) -> Recipient | None:
    # Preferences are optional here; trigger endpoints work for any live user.
    row = (
        await session.execute(
            select(*_recipient_columns())
            .outerjoin(NotificationPreferences, NotificationPreferences.user_id == User.id)
            .where(User.id == user_id, User.is_deleted.is_(False))
        )
    ).first()
    return _to_recipient(row) if row is not None else None


async def list_family_push_recipients(
    session: AsyncSession,
    *,
    family_id: int,
    exclude_user_ids: set[int],
) -> list[Recipient]:
    # Family members with push enabled and a live subscription, minus the excluded users.
    query = (
        select(*_recipient_columns())
        .join(NotificationPreferences, NotificationPreferences.user_id == User.id)
        .where(
            User.family_id == family_id,
            User.is_deleted.is_(False),
            NotificationPreferences.push_notifications_enabled.is_(True),
            _live_subscription_exists(),
        )
        .order_by(User.id.asc())
    )
    if exclude_user_ids:
        query = query.where(User.id.not_in(sorted(exclude_user_ids)))
    rows = (await session.execute(query)).all()
    return [_to_recipient(row) for row in rows]


async def list_live_subscriptions(session: AsyncSession, user_id: int) -> list[PushSubscription]:
    rows = (
        await session.execute(
            select(PushSubscription)
            .where(PushSubscription.user_id == user_id, PushSubscription.is_deleted.is_(False))
            .order_by(PushSubscription.created_at.desc(), PushSubscription.id.desc())
        )
    ).scalars().all()
    return list(rows)


async def soft_delete_subscription(
    session: AsyncSession,
    subscription_id: int,
    ctx: ChangeContext,
) -> bool:
    row = await session.get(PushSubscription, subscription_id)
    if row is None or row.is_deleted:
        return False
    soft_delete(row, ctx)
    await session.commit()
    return True


async def mark_subscription_weekly_notified(
    session: AsyncSession,
    subscription_id: int,
    ctx: ChangeContext,
) -> None:
    row = await session.get(PushSubscription, subscription_id)
    if row is None:
        return
    row.last_weekly_notification_sent_at = ctx.at
    record_change(row, ctx)
    await session.commit()


async def mark_weekly_email_sent(session: AsyncSession, user_id: int, ctx: ChangeContext) -> None:
    row = (
        await session.execute(
            select(NotificationPreferences).where(NotificationPreferences.user_id == user_id)
        )
    ).scalar_one_or_none()
    if row is None:
        return
    row.last_weekly_email_sent_at = ctx.at
    record_change(row, ctx)
    await session.commit()
