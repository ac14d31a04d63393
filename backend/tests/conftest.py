"""Shared fixtures: SQLite-backed session factories and telemetry builders."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from models import Base

T0 = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def at(minutes: float = 0, seconds: float = 0) -> str:
    return iso(T0 + timedelta(minutes=minutes, seconds=seconds))


def make_event(**overrides) -> dict:
    event = {
        "schemaVersion": 1,
        "deviceId": "pi-01",
        "sensorId": "cpu-temp",
        "ts": iso(T0),
        "seq": 0,
        "type": "cpu_temp",
        "valueType": "number",
        "value": 42.5,
        "unit": "C",
    }
    event.update(overrides)
    return event


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'telemetry.db'}"


@pytest.fixture
def open_store(sqlite_url):
    """Async context manager yielding a session factory over a fresh schema."""

    @asynccontextmanager
    async def _open():
        engine = create_async_engine(sqlite_url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    return _open
