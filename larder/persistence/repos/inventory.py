from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from larder.domain.models import InventoryItem, Product


@dataclass(frozen=True)
class ExpiringItem:
    product_name: str
    brand: str | None
    expiration_at: datetime
    is_expired: bool


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _threshold_end(today: date, threshold_days: int) -> datetime:
    # Everything dated up to and including today + threshold_days qualifies.
    return datetime.combine(today + timedelta(days=threshold_days + 1), time.min, tzinfo=timezone.utc)


def _owned_by(user_id: int, family_id: int | None):
    if family_id is None:
        return InventoryItem.user_id == user_id
    return or_(InventoryItem.user_id == user_id, InventoryItem.family_id == family_id)


def _expiring_filters(*, user_id: int, family_id: int | None, today: date, threshold_days: int) -> tuple:
    return (
        InventoryItem.is_deleted.is_(False),
        InventoryItem.is_fully_consumed.is_(False),
        InventoryItem.expiration_at.is_not(None),
        InventoryItem.expiration_at < _threshold_end(today, threshold_days),
        _owned_by(user_id, family_id),
    )


async def count_expiring_items(
    session: AsyncSession,
    *,
    user_id: int,
    family_id: int | None,
    today: date,
    threshold_days: int,
) -> int:
    value = await session.scalar(
        select(func.count(InventoryItem.id)).where(
            *_expiring_filters(user_id=user_id, family_id=family_id, today=today, threshold_days=threshold_days)
        )
    )
    return int(value or 0)


async def list_expiring_items(
    session: AsyncSession,
    *,
    user_id: int,
    family_id: int | None,
    today: date,
    threshold_days: int,
) -> list[ExpiringItem]:
    rows = (
        await session.execute(
            select(Product.name, Product.brand, InventoryItem.expiration_at)
            .join(Product, Product.id == InventoryItem.product_id)
            .where(
                *_expiring_filters(user_id=user_id, family_id=family_id, today=today, threshold_days=threshold_days)
            )
            .order_by(InventoryItem.expiration_at.asc(), InventoryItem.id.asc())
        )
    ).all()
    items: list[ExpiringItem] = []
    for name, brand, expiration_at in rows:
        expires = as_utc(expiration_at)
        items.append(
            ExpiringItem(
                product_name=name,
                brand=brand,
                expiration_at=expires,
                is_expired=expires.date() < today,
            )
        )
    return items


def partition_expiring(items: list[ExpiringItem]) -> tuple[list[ExpiringItem], list[ExpiringItem]]:
    # Split into (expired, expiring soon) preserving expiration order.
    expired = [item for item in items if item.is_expired]
    expiring_soon = [item for item in items if not item.is_expired]
    return expired, expiring_soon
