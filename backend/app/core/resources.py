"""Process-wide pooled clients: database engine, Redis, archive blob store.

Each client is created lazily on first use and reused for the lifetime of
the worker process. Stages receive them through their constructors, so tests
inject their own.
"""
from __future__ import annotations

import logging

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Settings, settings as default_settings
from core.blob_store import LocalBlobStore
from core.errors import ConfigError

logger = logging.getLogger("telemetry.resources")


class Resources:

    def __init__(self, settings: Settings):
        self.settings = settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._redis: Redis | None = None
        self._blob_store: LocalBlobStore | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            url = self.settings.DATABASE_URL
            if not url:
                raise ConfigError("Missing required setting: DATABASE_URL")
            kwargs = {"echo": self.settings.DEBUG, "pool_pre_ping": True}
            if not url.startswith("sqlite"):
                kwargs.update(
                    pool_size=self.settings.DB_POOL_SIZE,
                    pool_timeout=self.settings.DB_POOL_TIMEOUT,
                )
            self._engine = create_async_engine(url, **kwargs)
            logger.info("Database engine created (pool=%d)", self.settings.DB_POOL_SIZE)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine, class_=AsyncSession, expire_on_commit=False
            )
        return self._session_factory

    @property
    def redis(self) -> Redis:
        if self._redis is None:
            if not self.settings.REDIS_URL:
                raise ConfigError("Missing required setting: REDIS_URL")
            self._redis = Redis.from_url(self.settings.REDIS_URL, decode_responses=False)
            logger.info("Redis client created: %s", self.settings.REDIS_URL)
        return self._redis

    @property
    def blob_store(self) -> LocalBlobStore:
        if self._blob_store is None:
            if not self.settings.ARCHIVE_DIR:
                raise ConfigError("Missing required setting: ARCHIVE_DIR")
            self._blob_store = LocalBlobStore(self.settings.ARCHIVE_DIR)
        return self._blob_store

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


_resources: Resources | None = None


def get_resources() -> Resources:
    global _resources
    if _resources is None:
        _resources = Resources(default_settings)
    return _resources
