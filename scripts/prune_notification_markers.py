from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from sqlalchemy import delete

from larder.domain.models import NotificationMarker
from larder.persistence.db import SessionLocal


async def prune() -> None:
    # Remove expired SQL markers; Redis markers expire on their own.
    async with SessionLocal() as session:
        result = await session.execute(
            delete(NotificationMarker).where(NotificationMarker.expires_at < datetime.now(timezone.utc))
        )
        await session.commit()
        deleted = result.rowcount or 0
        print(f"pruned_notification_markers={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
