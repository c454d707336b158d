"""
Persistent (L2) cache stores.

A store provides ``get(key)``, ``put(key, entry, ttl)``, ``delete(key)`` and
``purge_expired(now)``. ``put`` is an idempotent upsert keyed by the cache key.
Store failures are raised as ``CacheBackendError``; the cache manager treats
them as misses.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Dict, Optional, Protocol

import structlog
from sqlalchemy import Column, Text, delete, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine, select

from prism.core.exceptions import CacheBackendError
from prism.core.models import CacheEntry

logger = structlog.get_logger(__name__)


class PersistentStore(Protocol):
    async def get(self, key: str) -> Optional[CacheEntry]: ...

    async def put(self, key: str, entry: CacheEntry, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def purge_expired(self, now: float) -> int: ...


class InMemoryPersistentStore:
    """Dict-backed store used when no database path is configured."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self.puts = 0

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        return entry.model_copy(update={"tier": "l2"}) if entry else None

    async def put(self, key: str, entry: CacheEntry, ttl: int) -> None:
        self.puts += 1
        self._entries[key] = entry.model_copy(update={"tier": "l2"})

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self, now: float) -> Dict[str, int]:
        expired = sum(1 for e in self._entries.values() if e.is_expired(now))
        return {"entries": len(self._entries), "live": len(self._entries) - expired, "expired": expired}


class CacheRecord(SQLModel, table=True):
    """Persisted analysis payload keyed by cache key."""

    key: str = Field(primary_key=True)
    payload: str = Field(sa_column=Column(Text, nullable=False))
    created_at: float
    expires_at: float = Field(index=True)
    ttl: int


def create_engine_for_path(db_path: Path) -> Engine:
    """Return an SQLite engine for the provided path."""
    return create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


class SQLitePersistentStore:
    """
    SQLModel-backed store.

    Blocking session work runs in a worker thread so the event loop is never
    held up by disk I/O.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        SQLModel.metadata.create_all(engine)

    @classmethod
    def from_path(cls, db_path: str) -> "SQLitePersistentStore":
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(create_engine_for_path(path))

    def _get_sync(self, key: str) -> Optional[CacheEntry]:
        with Session(self._engine) as session:
            record = session.get(CacheRecord, key)
            if record is None:
                return None
            return CacheEntry(
                key=record.key,
                payload=json.loads(record.payload),
                created_at=record.created_at,
                expires_at=record.expires_at,
                tier="l2",
            )

    def _put_sync(self, key: str, entry: CacheEntry, ttl: int) -> None:
        with Session(self._engine) as session:
            session.merge(
                CacheRecord(
                    key=key,
                    payload=json.dumps(entry.payload, sort_keys=True),
                    created_at=entry.created_at,
                    expires_at=entry.expires_at,
                    ttl=ttl,
                )
            )
            session.commit()

    def _delete_sync(self, key: str) -> None:
        with self._engine.begin() as connection:
            connection.execute(delete(CacheRecord).where(CacheRecord.key == key))

    def _purge_sync(self, now: float) -> int:
        with self._engine.begin() as connection:
            result = connection.execute(delete(CacheRecord).where(CacheRecord.expires_at < now))
            return result.rowcount

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            return await asyncio.to_thread(self._get_sync, key)
        except (SQLAlchemyError, ValueError) as e:
            raise CacheBackendError("Persistent cache read failed", details={"key": key}) from e

    async def put(self, key: str, entry: CacheEntry, ttl: int) -> None:
        try:
            await asyncio.to_thread(self._put_sync, key, entry, ttl)
        except (SQLAlchemyError, TypeError, ValueError) as e:
            raise CacheBackendError("Persistent cache write failed", details={"key": key}) from e

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, key)
        except SQLAlchemyError as e:
            raise CacheBackendError("Persistent cache delete failed", details={"key": key}) from e

    async def purge_expired(self, now: float) -> int:
        """Delete every row that expired before ``now``; returns the count."""
        try:
            return await asyncio.to_thread(self._purge_sync, now)
        except SQLAlchemyError as e:
            raise CacheBackendError("Persistent cache purge failed") from e

    def stats(self, now: float) -> Dict[str, int]:
        """Entry counts, split by whether they have expired at ``now``."""
        try:
            with Session(self._engine) as session:
                total = session.exec(select(func.count()).select_from(CacheRecord)).one()
                expired = session.exec(
                    select(func.count()).select_from(CacheRecord).where(CacheRecord.expires_at < now)
                ).one()
        except SQLAlchemyError as e:
            raise CacheBackendError("Persistent cache stats failed") from e
        return {"entries": total, "live": total - expired, "expired": expired}

    def close(self):
        self._engine.dispose()
