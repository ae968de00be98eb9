from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from larder.domain.models import (
    ACTIVITY_SHOPPING_LIST_ITEM_ADD,
    Activity,
    ShoppingList,
    ShoppingListItem,
    User,
)
from larder.persistence.repos.inventory import as_utc


@dataclass(frozen=True)
class ItemAddActivity:
    user_id: int
    family_id: int
    shopping_list_id: int
    shopping_list_name: str
    timestamp: datetime


async def list_item_add_activities(
    session: AsyncSession,
    *,
    since: datetime,
    until: datetime,
) -> list[ItemAddActivity]:
    # Item additions on live family lists in [since, until).
    rows = (
        await session.execute(
            select(
                Activity.user_id,
                ShoppingList.family_id,
                ShoppingList.id,
                ShoppingList.name,
                Activity.timestamp,
            )
            .join(ShoppingListItem, ShoppingListItem.id == Activity.record_id)
            .join(ShoppingList, ShoppingList.id == ShoppingListItem.shopping_list_id)
            .where(
                Activity.activity_type == ACTIVITY_SHOPPING_LIST_ITEM_ADD,
                Activity.family_id.is_not(None),
                Activity.timestamp >= since,
                Activity.timestamp < until,
                ShoppingList.is_deleted.is_(False),
                ShoppingList.family_id.is_not(None),
            )
            .order_by(Activity.timestamp.asc(), Activity.id.asc())
        )
    ).all()
    return [
        ItemAddActivity(
            user_id=user_id,
            family_id=family_id,
            shopping_list_id=list_id,
            shopping_list_name=list_name,
            timestamp=as_utc(timestamp),
        )
        for user_id, family_id, list_id, list_name, timestamp in rows
    ]


async def families_with_min_members(
    session: AsyncSession,
    family_ids: set[int],
    *,
    min_members: int = 2,
) -> set[int]:
    if not family_ids:
        return set()
    rows = (
        await session.execute(
            select(User.family_id)
            .where(User.family_id.in_(sorted(family_ids)), User.is_deleted.is_(False))
            .group_by(User.family_id)
            .having(func.count(User.id) >= min_members)
        )
    ).scalars().all()
    return {int(row) for row in rows}
