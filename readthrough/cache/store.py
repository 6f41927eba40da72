"""Cache stores: exact-key get/set/delete with per-entry expiry.

Stores deliberately offer no pattern delete or key scan so that any plain
key-value backend can implement them. Expiry is enforced lazily on read.
"""

import json
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Optional

import aiosqlite
import structlog
from pydantic import BaseModel

logger = structlog.get_logger()

Clock = Callable[[], float]


class CacheEntry(BaseModel):
    """A single cache entry."""

    key: str
    value: str  # JSON serialized
    created_at: float
    expires_at: float
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_ms(self, now: float) -> int:
        return max(0, int((self.expires_at - now) * 1000))


def serialize(value: Any) -> str:
    """Serialize value to JSON string."""
    return json.dumps(value, default=_json_default, ensure_ascii=False)


def deserialize(value: str) -> Any:
    """Deserialize JSON string to value."""
    return json.loads(value)


def round_trip(value: Any) -> Any:
    """Return ``value`` in the form every store reads it back in.

    Raises:
        TypeError: if the value cannot be serialized
    """
    return deserialize(serialize(value))


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    elif isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    elif isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    raise TypeError(f"Object of type {obj.__class__.__name__} is not cacheable")


class CacheStore(ABC):
    """Exact-key store contract shared by every backend."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock

    @abstractmethod
    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for ``key`` or None when absent or expired."""

    @abstractmethod
    async def put_entry(self, entry: CacheEntry) -> None:
        """Store ``entry``, replacing any entry under the same key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Deleting an absent key is not an error."""

    @abstractmethod
    async def clear(self) -> int:
        """Remove every entry and return how many were removed."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored entries, expired ones included until cleaned up."""

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired entries and return how many were removed."""

    async def get(self, key: str) -> Optional[Any]:
        """Get value from the store.

        Returns:
            Cached value or None if not found/expired
        """
        entry = await self.get_entry(key)
        if entry is None:
            return None
        return deserialize(entry.value)

    async def set(self, key: str, value: Any, ttl_ms: int) -> None:
        """Store ``value`` under ``key`` for ``ttl_ms`` milliseconds."""
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=serialize(value),
            created_at=now,
            expires_at=now + ttl_ms / 1000,
        )
        await self.put_entry(entry)


class MemoryStore(CacheStore):
    """In-process LRU store.

    All operations complete without suspending, so concurrent tasks on one
    event loop never observe a half-applied update.
    """

    def __init__(self, max_items: int = 1000, clock: Clock = time.time):
        super().__init__(clock)
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._max_items = max_items

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            return None
        # Move to end (most recently used)
        self._entries.move_to_end(key)
        entry.hit_count += 1
        return entry

    async def put_entry(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry
        self._entries.move_to_end(entry.key)

        # Evict oldest if over limit
        while len(self._entries) > self._max_items:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    async def count(self) -> int:
        return len(self._entries)

    async def cleanup_expired(self) -> int:
        now = self._clock()
        expired_keys = [k for k, v in self._entries.items() if v.is_expired(now)]
        for key in expired_keys:
            del self._entries[key]
        return len(expired_keys)


class SqliteStore(CacheStore):
    """Persistent store backed by a SQLite file."""

    def __init__(self, db_path: Path, clock: Clock = time.time):
        super().__init__(clock)
        self._db_path = Path(db_path)
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        """Ensure database is initialized."""
        if self._initialized:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL,
                    hit_count INTEGER DEFAULT 0
                )
            """)
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_expires ON cache_entries(expires_at)"
            )
            await db.commit()

        self._initialized = True
        logger.debug("Cache database initialized", path=str(self._db_path))

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "SELECT value, created_at, expires_at, hit_count FROM cache_entries WHERE key = ?",
                (key,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None

            value, created_at, expires_at, hit_count = row
            entry = CacheEntry(
                key=key,
                value=value,
                created_at=created_at,
                expires_at=expires_at,
                hit_count=hit_count + 1,
            )

            if entry.is_expired(self._clock()):
                await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                await db.commit()
                return None

            await db.execute(
                "UPDATE cache_entries SET hit_count = ? WHERE key = ?",
                (entry.hit_count, key),
            )
            await db.commit()
            return entry

    async def put_entry(self, entry: CacheEntry) -> None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO cache_entries
                (key, value, created_at, expires_at, hit_count)
                VALUES (?, ?, ?, ?, 0)
                """,
                (entry.key, entry.value, entry.created_at, entry.expires_at),
            )
            await db.commit()

    async def delete(self, key: str) -> None:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            await db.commit()

    async def clear(self) -> int:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute("DELETE FROM cache_entries")
            await db.commit()
            return cursor.rowcount

    async def count(self) -> int:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM cache_entries")
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def cleanup_expired(self) -> int:
        await self._ensure_initialized()

        async with aiosqlite.connect(self._db_path) as db:
            cursor = await db.execute(
                "DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),)
            )
            await db.commit()
            return cursor.rowcount


class TieredStore(CacheStore):
    """Two-tier store: LRU memory in front of a persistent store."""

    def __init__(self, memory: MemoryStore, persistent: CacheStore, clock: Clock = time.time):
        super().__init__(clock)
        self.memory = memory
        self.persistent = persistent

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = await self.memory.get_entry(key)
        if entry is not None:
            return entry

        entry = await self.persistent.get_entry(key)
        if entry is not None:
            # Promote so the next read is served from memory
            await self.memory.put_entry(entry.model_copy())
        return entry

    async def put_entry(self, entry: CacheEntry) -> None:
        await self.memory.put_entry(entry)
        await self.persistent.put_entry(entry)

    async def delete(self, key: str) -> None:
        await self.memory.delete(key)
        await self.persistent.delete(key)

    async def clear(self) -> int:
        await self.memory.clear()
        return await self.persistent.clear()

    async def count(self) -> int:
        """Entries in the persistent tier, which holds every stored key."""
        return await self.persistent.count()

    async def cleanup_expired(self) -> int:
        await self.memory.cleanup_expired()
        return await self.persistent.cleanup_expired()
