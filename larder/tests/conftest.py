from __future__ import annotations

import os

# Point settings at local backends before any larder module builds its engine.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MARKER_STORE", "memory")
os.environ.setdefault("EMAIL_CHANNEL", "fake")
os.environ.setdefault("PUSH_CHANNEL", "fake")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from larder.core.config import get_settings
from larder.domain.models import Base
from larder.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_settings_and_telemetry() -> None:
    # Settings are cached per process; tests that monkeypatch env need a fresh read.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def session_factory():
    # One shared connection keeps the in-memory database alive for the whole test.
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
