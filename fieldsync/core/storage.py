"""Durable key-value persistence for the offline layer.

Backends:
- SQLite: default, survives process restarts (SQLModel + async SQLAlchemy)
- Redis: when a device-local or sidecar Redis is available
- Memory: tests and ephemeral sessions

Every backend stores JSON text under string keys. Single-key writes are
atomic; there are no multi-key transactions. Failures raise StorageError so
callers never mistake a broken disk for an empty cache.
"""

import time
from typing import Dict, Iterable, Optional, Protocol

import redis.asyncio as redis
from sqlalchemy import delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, select

from fieldsync.core.config import Settings
from fieldsync.core.exceptions import StorageError
from fieldsync.core.logging import get_logger
from fieldsync.models.storage import KeyValueRecord

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Protocol for key-value backends (enables duck typing)."""

    async def startup(self) -> None:
        ...

    async def shutdown(self) -> None:
        ...

    async def get(self, key: str) -> Optional[str]:
        """Return the stored text, or None when the key is absent."""
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...

    async def remove_many(self, keys: Iterable[str]) -> None:
        ...


class MemoryKeyValueStore:
    """In-process store. Shares its dict when handed one, to simulate restarts."""

    def __init__(self, data: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = data if data is not None else {}

    async def startup(self) -> None:
        logger.info("Using in-memory key-value store")

    async def shutdown(self) -> None:
        pass

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)

    async def remove_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.data.pop(key, None)


class SQLiteKeyValueStore:
    """Async SQLite store with one row per key."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine = None
        self.async_session = None

    async def startup(self) -> None:
        """Initialize database connection and create the table."""
        try:
            self.engine = create_async_engine(self.url, echo=self.echo, future=True)
            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            logger.info("SQLite key-value store initialized", url=self.url)
        except Exception as e:
            logger.error("SQLite store startup failed", url=self.url, error=str(e))
            raise StorageError("startup", self.url, str(e)) from e

    async def shutdown(self) -> None:
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.async_session = None
            logger.info("SQLite key-value store closed")

    def _session(self) -> AsyncSession:
        if not self.async_session:
            raise StorageError("session", self.url, "store not initialized")
        return self.async_session()

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(KeyValueRecord).where(KeyValueRecord.key == key)
                )
                record = result.scalar_one_or_none()
                return record.value if record else None
        except StorageError:
            raise
        except Exception as e:
            logger.error("Failed to read key", key=key, error=str(e))
            raise StorageError("get", key, str(e)) from e

    async def set(self, key: str, value: str) -> None:
        try:
            now = time.time()
            statement = sqlite_insert(KeyValueRecord).values(key=key, value=value, updated_at=now)
            statement = statement.on_conflict_do_update(
                index_elements=["key"],
                set_={"value": statement.excluded.value, "updated_at": statement.excluded.updated_at},
            )
            async with self._session() as session:
                await session.execute(statement)
                await session.commit()
        except StorageError:
            raise
        except Exception as e:
            logger.error("Failed to write key", key=key, error=str(e))
            raise StorageError("set", key, str(e)) from e

    async def remove(self, key: str) -> None:
        await self.remove_many([key])

    async def remove_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            async with self._session() as session:
                await session.execute(delete(KeyValueRecord).where(KeyValueRecord.key.in_(keys)))
                await session.commit()
        except StorageError:
            raise
        except Exception as e:
            logger.error("Failed to remove keys", keys=keys, error=str(e))
            raise StorageError("remove", ",".join(keys), str(e)) from e


class RedisKeyValueStore:
    """Redis-backed store. Keys never expire; expiry is the cache's job."""

    def __init__(self, url: Optional[str] = None, client: Optional["redis.Redis"] = None):
        self.url = url
        self.redis: Optional[redis.Redis] = client

    async def startup(self) -> None:
        """Initialize and ping the Redis connection."""
        if self.redis is None:
            if not self.url:
                raise StorageError("startup", "redis", "REDIS_URL is not configured")
            self.redis = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
        try:
            await self.redis.ping()
            logger.info("Redis key-value store initialized", url=self.url)
        except Exception as e:
            logger.error("Redis connection failed", url=self.url, error=str(e))
            raise StorageError("startup", "redis", str(e)) from e

    async def shutdown(self) -> None:
        if self.redis:
            await self.redis.close()
            logger.info("Redis key-value store connections closed")

    async def get(self, key: str) -> Optional[str]:
        try:
            value = await self.redis.get(key)
        except Exception as e:
            logger.error("Redis get failed", key=key, error=str(e))
            raise StorageError("get", key, str(e)) from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self.redis.set(key, value)
        except Exception as e:
            logger.error("Redis set failed", key=key, error=str(e))
            raise StorageError("set", key, str(e)) from e

    async def remove(self, key: str) -> None:
        await self.remove_many([key])

    async def remove_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        try:
            await self.redis.delete(*keys)
        except Exception as e:
            logger.error("Redis delete failed", keys=keys, error=str(e))
            raise StorageError("remove", ",".join(keys), str(e)) from e


def create_store(settings: Settings) -> KeyValueStore:
    """Factory function to create the configured backend.

    Args:
        settings: Application settings

    Returns:
        An uninitialized store; call ``startup()`` before use
    """
    if settings.storage_backend == "redis":
        return RedisKeyValueStore(settings.redis_url)
    if settings.storage_backend == "memory":
        return MemoryKeyValueStore()
    return SQLiteKeyValueStore(settings.storage_url, echo=settings.storage_echo)
