"""Key/value cache with per-entry TTL, stored in the state database."""
import logging
import time
from typing import Any, Optional

import orjson

from src.store.state import StateDB

logger = logging.getLogger(__name__)


class KeyValueCache:
    """JSON values (orjson) keyed by string, expiring after a TTL in seconds."""

    def __init__(self, state: StateDB):
        self.state = state

    async def get(self, key: str) -> Optional[Any]:
        async with self.state.connect() as db:
            cursor = await db.execute(
                "SELECT value FROM cache_entries WHERE key = ? AND expires_at > ?",
                (key, time.time()),
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return orjson.loads(row[0])

    async def set(self, key: str, value: Any, ttl: float) -> None:
        """Store a value; concurrent writers race and the last write wins."""
        async with self.state.connect() as db:
            await db.execute(
                "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, orjson.dumps(value), time.time() + ttl),
            )

    async def delete(self, key: str) -> None:
        async with self.state.connect() as db:
            await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))

    async def delete_prefix(self, prefix: str) -> int:
        async with self.state.connect() as db:
            cursor = await db.execute(
                "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ?", (len(prefix), prefix)
            )
            return cursor.rowcount

    async def purge_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        async with self.state.connect() as db:
            cursor = await db.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (time.time(),))
            removed = cursor.rowcount
        if removed:
            logger.debug(f"Purged {removed} expired cache entries")
        return removed
