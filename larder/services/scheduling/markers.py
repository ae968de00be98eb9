from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from larder.core.config import Settings, get_settings
from larder.core.errors import MarkerStoreError
from larder.domain.models import NotificationMarker
from larder.persistence.changes import ChangeContext


logger = logging.getLogger(__name__)

MARKER_PREFIX = "notify"


def marker_key(kind: str, recipient: str, period: str) -> str:
    return f"{MARKER_PREFIX}:{kind}:{recipient}:{period}"


def split_marker_key(key: str) -> tuple[str, str, str]:
    # Recipients may contain ":" (endpoints); kind and period never do.
    parts = key.split(":")
    if len(parts) < 4 or parts[0] != MARKER_PREFIX:
        raise ValueError(f"not a notification marker key: {key}")
    return parts[1], ":".join(parts[2:-1]), parts[-1]


def daily_period(local_dt: datetime) -> str:
    return local_dt.date().isoformat()


def weekly_period(local_dt: datetime) -> str:
    iso = local_dt.isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}"


class MarkerStore(Protocol):
    async def exists(self, key: str) -> bool:
        ...

    async def record(self, key: str, *, ttl_s: int) -> bool:
        """Record the marker; return False if it was already present."""
        ...


class InMemoryMarkerStore:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._expiry: dict[str, float] = {}
        self._clock = clock

    def _live(self, key: str) -> bool:
        expiry = self._expiry.get(key)
        if expiry is None:
            return False
        if self._clock() >= expiry:
            self._expiry.pop(key, None)
            return False
        return True

    async def exists(self, key: str) -> bool:
        return self._live(key)

    async def record(self, key: str, *, ttl_s: int) -> bool:
        if self._live(key):
            return False
        self._expiry[key] = self._clock() + max(1, int(ttl_s))
        return True


class RedisMarkerStore:
    def __init__(self, redis: Redis | Any, *, prefix: str = "larder:notify") -> None:
        self._redis = redis
        self._prefix = prefix.rstrip(":")

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.get(self._key(key)))
        except RedisError as exc:
            raise MarkerStoreError(f"redis marker lookup failed: {exc}") from exc

    async def record(self, key: str, *, ttl_s: int) -> bool:
        # SET NX EX gives a single winner per key across scheduler instances.
        try:
            acquired = await self._redis.set(self._key(key), "1", nx=True, ex=max(1, int(ttl_s)))
        except RedisError as exc:
            raise MarkerStoreError(f"redis marker write failed: {exc}") from exc
        return bool(acquired)

    async def aclose(self) -> None:
        await self._redis.aclose()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SqlMarkerStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def exists(self, key: str) -> bool:
        try:
            async with self._session_factory() as session:
                row = await session.scalar(
                    select(NotificationMarker.id).where(
                        NotificationMarker.marker_key == key,
                        NotificationMarker.expires_at > self._clock(),
                    )
                )
        except SQLAlchemyError as exc:
            raise MarkerStoreError(f"sql marker lookup failed: {exc}") from exc
        return row is not None

    async def record(self, key: str, *, ttl_s: int, ctx: ChangeContext | None = None) -> bool:
        kind, recipient, period = split_marker_key(key)
        now = self._clock()
        ctx = ctx or ChangeContext(at=now)
        try:
            async with self._session_factory() as session:
                # Expired markers give way so the unique key can be reused.
                await session.execute(
                    delete(NotificationMarker).where(
                        NotificationMarker.marker_key == key,
                        NotificationMarker.expires_at <= now,
                    )
                )
                session.add(
                    NotificationMarker(
                        marker_key=key,
                        kind=kind,
                        recipient=recipient,
                        period=period,
                        created_by=ctx.actor_label,
                        created_at=now,
                        expires_at=now + timedelta(seconds=max(1, int(ttl_s))),
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
        except SQLAlchemyError as exc:
            raise MarkerStoreError(f"sql marker write failed: {exc}") from exc
        return True


def get_marker_store(settings: Settings | None = None) -> MarkerStore:
    settings = settings or get_settings()
    backend = (settings.marker_store or "redis").lower()
    if backend == "memory":
        return InMemoryMarkerStore()
    if backend == "sql":
        from larder.persistence.db import SessionLocal

        return SqlMarkerStore(SessionLocal)
    if backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisMarkerStore(redis, prefix=settings.marker_redis_prefix)
    raise ValueError(f"Unsupported marker store: {backend}")
