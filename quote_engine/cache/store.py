"""
Quote Engine — Persistence Layer
──────────────────────────────────
Key-value stores behind the freshness cache and the call budget.

  MemoryStore: process-local dicts. Default, and what the tests use.
  RedisStore:  redis.asyncio, JSON values. Survives restarts and is
                shared between workers.

Key layout (Redis):
  qe:entry:{kind}:{SYMBOL}   → last known CacheEntry
  qe:budget:{YYYY-MM-DD}     → CallBudgetState for that day
  qe:setting:{NAME}          → plain string (e.g. the API key)

Budget records are written per day and never deleted, so previous days
stay readable as history. Spending a call goes through update_budget, which
RedisStore runs as an optimistic WATCH/MULTI transaction so workers sharing
one Redis can never overspend a day.

Stores raise their backend's errors unchanged. Callers decide what a
failed read or write means.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from quote_engine.models.market_data import CacheEntry, CallBudgetState, DataKind

log = logging.getLogger("qe.store")

KEY_PREFIX = "qe"
BUDGET_TXN_RETRIES = 50

# Mutates the day's state in place; returns True when it should be saved
BudgetUpdate = Callable[[CallBudgetState], bool]


def key_entry(kind: DataKind, symbol: str) -> str:
    return f"{KEY_PREFIX}:entry:{kind.value}:{symbol}"


def key_budget(call_date: date) -> str:
    return f"{KEY_PREFIX}:budget:{call_date.isoformat()}"


def key_setting(name: str) -> str:
    return f"{KEY_PREFIX}:setting:{name}"


class KeyValueStore(ABC):
    name: str = "abstract"

    @abstractmethod
    async def get_entry(self, kind: DataKind, symbol: str) -> Optional[CacheEntry]: ...

    @abstractmethod
    async def put_entry(self, entry: CacheEntry) -> None: ...

    @abstractmethod
    async def get_budget(self, call_date: date) -> Optional[CallBudgetState]: ...

    @abstractmethod
    async def put_budget(self, state: CallBudgetState) -> None: ...

    async def update_budget(
        self, call_date: date, apply: BudgetUpdate
    ) -> Tuple[bool, CallBudgetState]:
        """
        Read the day's budget, apply `apply`, save it when `apply` returns True.
        Plain read-then-write: callers in one process serialize around it.
        """
        state = await self.get_budget(call_date) or CallBudgetState(call_date=call_date)
        changed = apply(state)
        if changed:
            await self.put_budget(state)
        return changed, state

    @abstractmethod
    async def get_setting(self, name: str) -> Optional[str]: ...

    @abstractmethod
    async def set_setting(self, name: str, value: str) -> None: ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# ══════════════════════════════════════════════════════════════
# IN-MEMORY
# ══════════════════════════════════════════════════════════════
class MemoryStore(KeyValueStore):
    name = "memory"

    def __init__(self):
        self._entries:  Dict[Tuple[DataKind, str], CacheEntry] = {}
        self._budgets:  Dict[date, CallBudgetState] = {}
        self._settings: Dict[str, str] = {}

    async def get_entry(self, kind: DataKind, symbol: str) -> Optional[CacheEntry]:
        return self._entries.get((kind, symbol))

    async def put_entry(self, entry: CacheEntry) -> None:
        self._entries[(entry.kind, entry.symbol)] = entry

    async def get_budget(self, call_date: date) -> Optional[CallBudgetState]:
        state = self._budgets.get(call_date)
        # hand out copies so callers can't mutate stored state behind the governor's lock
        return CallBudgetState(**vars(state)) if state else None

    async def put_budget(self, state: CallBudgetState) -> None:
        self._budgets[state.call_date] = CallBudgetState(**vars(state))

    async def get_setting(self, name: str) -> Optional[str]:
        return self._settings.get(name)

    async def set_setting(self, name: str, value: str) -> None:
        self._settings[name] = value

    def budget_history(self) -> Dict[date, CallBudgetState]:
        return dict(self._budgets)


# ══════════════════════════════════════════════════════════════
# REDIS
# ══════════════════════════════════════════════════════════════
class RedisStore(KeyValueStore):
    name = "redis"

    def __init__(self, client: aioredis.Redis):
        self._r = client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        return cls(aioredis.from_url(url, decode_responses=True, socket_timeout=2))

    async def _get_json(self, key: str) -> Optional[dict]:
        raw = await self._r.get(key)
        return json.loads(raw) if raw else None

    async def _set_json(self, key: str, value: dict) -> None:
        await self._r.set(key, json.dumps(value))

    async def get_entry(self, kind: DataKind, symbol: str) -> Optional[CacheEntry]:
        d = await self._get_json(key_entry(kind, symbol))
        return CacheEntry.from_dict(d) if d else None

    async def put_entry(self, entry: CacheEntry) -> None:
        await self._set_json(key_entry(entry.kind, entry.symbol), entry.to_dict())

    async def get_budget(self, call_date: date) -> Optional[CallBudgetState]:
        d = await self._get_json(key_budget(call_date))
        return CallBudgetState.from_dict(d) if d else None

    async def put_budget(self, state: CallBudgetState) -> None:
        await self._set_json(key_budget(state.call_date), state.to_dict())

    async def update_budget(
        self, call_date: date, apply: BudgetUpdate
    ) -> Tuple[bool, CallBudgetState]:
        """
        Check-and-spend shared by every worker on this Redis.
        WATCH the day's key, decide on a fresh read, write in MULTI/EXEC.
        A concurrent writer aborts the EXEC and the decision is retaken on
        the new value.
        """
        key = key_budget(call_date)
        async with self._r.pipeline(transaction=True) as pipe:
            for attempt in range(BUDGET_TXN_RETRIES):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    state = (
                        CallBudgetState.from_dict(json.loads(raw)) if raw
                        else CallBudgetState(call_date=call_date)
                    )
                    if not apply(state):
                        await pipe.unwatch()
                        return False, state
                    pipe.multi()
                    pipe.set(key, json.dumps(state.to_dict()))
                    await pipe.execute()
                    return True, state
                except WatchError:
                    log.debug(f"Budget {call_date} changed under us, retry {attempt + 1}")
                    continue
        raise WatchError(f"budget {call_date} still contended after {BUDGET_TXN_RETRIES} attempts")

    async def get_setting(self, name: str) -> Optional[str]:
        return await self._r.get(key_setting(name))

    async def set_setting(self, name: str, value: str) -> None:
        await self._r.set(key_setting(name), value)

    async def ping(self) -> bool:
        try:
            return bool(await self._r.ping())
        except Exception as e:
            log.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self._r.aclose()


async def connect_store(redis_url: Optional[str]) -> KeyValueStore:
    """Redis when reachable, otherwise an in-memory store."""
    if not redis_url:
        log.info("REDIS_URL not set - using in-memory store")
        return MemoryStore()
    store = RedisStore.from_url(redis_url)
    if await store.ping():
        log.info("Redis connected")
        return store
    log.warning("Redis unavailable - using in-memory store")
    try:
        await store.close()
    except Exception as e:
        log.debug(f"Redis close after failed ping: {e}")
    return MemoryStore()
