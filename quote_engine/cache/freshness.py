"""
Quote Engine — Freshness Cache
────────────────────────────────
Last-known-good value per (data kind, symbol), with its storage time.

Entries are overwritten on every refresh and never evicted: an old entry
is still the best fallback when the upstream is unreachable.

Whether an entry is fresh depends on the market session at the time of
the read (see ttl_config). Checking freshness is pure and cheap; nothing
is written until the orchestrator decides a refresh is warranted.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, Optional, Tuple

from redis.exceptions import RedisError

from quote_engine.cache.store import KeyValueStore
from quote_engine.cache.ttl_config import TTLPolicy
from quote_engine.exceptions import CacheIOError
from quote_engine.models.market_data import CacheEntry, DataKind, MarketValue

log = logging.getLogger("qe.cache")

# What a store may raise on a bad read/write
STORE_ERRORS = (RedisError, OSError, json.JSONDecodeError, KeyError, TypeError, ValueError)


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock  = asyncio.Lock()
        self.users = 0


class FreshnessCache:

    def __init__(self, store: KeyValueStore, ttl_policy: Optional[TTLPolicy] = None):
        self._store  = store
        self._policy = ttl_policy or TTLPolicy()
        self._locks: Dict[Tuple[DataKind, str], _KeyLock] = {}

    @property
    def store(self) -> KeyValueStore:
        return self._store

    async def get(self, kind: DataKind, symbol: str) -> Optional[CacheEntry]:
        try:
            return await self._store.get_entry(kind, symbol)
        except STORE_ERRORS as e:
            raise CacheIOError(f"read {kind.value}:{symbol} failed: {e}") from e

    async def put(
        self, kind: DataKind, symbol: str, value: MarketValue, now: datetime
    ) -> CacheEntry:
        """Overwrite the entry for (kind, symbol). Provenance travels on `value`."""
        entry = CacheEntry(kind=kind, symbol=symbol, value=value, stored_at=now)
        try:
            await self._store.put_entry(entry)
        except STORE_ERRORS as e:
            raise CacheIOError(f"write {kind.value}:{symbol} failed: {e}") from e
        log.debug(f"{symbol}: stored {kind.value} (real={value.is_real})")
        return entry

    def ttl_for(self, kind: DataKind, now: datetime) -> timedelta:
        return self._policy.ttl_for(kind, now)

    def is_fresh(
        self, entry: CacheEntry, now: datetime, ttl: Optional[timedelta] = None
    ) -> bool:
        if ttl is None:
            ttl = self.ttl_for(entry.kind, now)
        return now - entry.stored_at < ttl

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def locked(self, kind: DataKind, symbol: str) -> AsyncIterator[None]:
        """
        Hold the lock for one (kind, symbol) while reading then writing it.
        Keys never share a lock. A key's lock lives only while someone holds
        or waits on it, so arbitrary symbols don't accumulate.
        """
        key = (kind, symbol)
        slot = self._locks.get(key)
        if slot is None:
            slot = self._locks[key] = _KeyLock()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._locks[key]
