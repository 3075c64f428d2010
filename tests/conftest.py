"""
Pytest configuration and fixtures
Provides a scripted upstream, a controllable clock and an orchestrator factory
"""
import asyncio
import random
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pytest
from redis.exceptions import WatchError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from quote_engine.cache.freshness import FreshnessCache
from quote_engine.cache.store import MemoryStore
from quote_engine.models import (
    DataKind,
    ErrorKind,
    FetchFailure,
    FetchResult,
    FetchSuccess,
    QuoteRecord,
)
from quote_engine.orchestrator.fallback import FallbackOrchestrator
from quote_engine.orchestrator.rate_limiter import CallBudgetGovernor
from quote_engine.settings import ApiKeyProvider
from quote_engine.sources.base import QuoteSource
from quote_engine.sources.synthetic import SyntheticGenerator

# Wednesday 2024-03-13, inside trading hours
MARKET_OPEN = datetime(2024, 3, 13, 10, 0)
# Saturday 2024-03-16
WEEKEND = datetime(2024, 3, 16, 12, 0)


class FixedClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSource(QuoteSource):
    """Answers from a script keyed by (kind, symbol) and counts every call."""

    name = "fake"

    def __init__(self, delay: float = 0.0):
        self.script: Dict[Tuple[DataKind, str], Union[FetchResult, Exception]] = {}
        self.calls: List[Tuple[DataKind, str, str]] = []
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    def on(self, kind: DataKind, symbol: str, result: Union[FetchResult, Exception]) -> "FakeSource":
        self.script[(kind, symbol)] = result
        return self

    async def _answer(self, kind: DataKind, symbol: str, api_key: str) -> FetchResult:
        self.calls.append((kind, symbol, api_key))
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        result = self.script.get((kind, symbol), FetchFailure(ErrorKind.UPSTREAM_ERROR, "unscripted"))
        if isinstance(result, Exception):
            raise result
        return result

    async def fetch_quote(self, symbol: str, api_key: str) -> FetchResult:
        return await self._answer(DataKind.QUOTE, symbol, api_key)

    async def fetch_history(self, symbol: str, api_key: str) -> FetchResult:
        return await self._answer(DataKind.HISTORY, symbol, api_key)


def real_quote(symbol: str, price: float, at: datetime) -> QuoteRecord:
    return QuoteRecord(
        symbol=symbol, price=price, change_percent=0.5, volume=1_000_000,
        fetched_at=at, is_real=True,
    )


def static_key(key: Optional[str]):
    async def _load():
        return key
    return _load


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(MARKET_OPEN)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def make_orchestrator(clock, source):
    """Factory so each test builds its orchestrator inside its own event loop."""

    def _make(
        store=None,
        daily_limit: int = 25,
        min_interval: timedelta = timedelta(0),
        api_key: Optional[str] = "demo",
        synthesize_on_miss: bool = True,
        symbols=None,
        batch_concurrency: int = 5,
    ) -> FallbackOrchestrator:
        store = store if store is not None else MemoryStore()
        return FallbackOrchestrator(
            cache=FreshnessCache(store),
            governor=CallBudgetGovernor(store, daily_limit=daily_limit, min_interval=min_interval),
            source=source,
            synthesizer=SyntheticGenerator(rng=random.Random(42)),
            api_keys=ApiKeyProvider(static_key(api_key)),
            clock=clock,
            synthesize_on_miss=synthesize_on_miss,
            symbols=symbols,
            batch_concurrency=batch_concurrency,
        )

    return _make


@pytest.fixture
def success():
    """FetchSuccess for a real quote at the given price."""
    def _success(symbol: str, price: float, at: datetime = MARKET_OPEN) -> FetchSuccess:
        return FetchSuccess(real_quote(symbol, price, at))
    return _success


class FakeRedis:
    """
    Just enough of redis.asyncio.Redis for RedisStore, including WATCH/MULTI.
    With suspend=True every round trip yields to the loop, so two clients
    sharing one instance interleave the way two workers would.
    """

    def __init__(self, suspend: bool = False):
        self.data = {}
        self.versions = {}
        self.suspend = suspend
        self.closed = False

    async def _round_trip(self):
        if self.suspend:
            await asyncio.sleep(0)

    def _write(self, key, value):
        self.data[key] = value
        self.versions[key] = self.versions.get(key, 0) + 1

    async def get(self, key):
        await self._round_trip()
        return self.data.get(key)

    async def set(self, key, value):
        await self._round_trip()
        self._write(key, value)

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


class FakePipeline:
    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._watched = {}
        self._queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.reset()

    def reset(self):
        self._watched, self._queued = {}, []

    async def watch(self, *keys):
        await self._redis._round_trip()
        for key in keys:
            self._watched[key] = self._redis.versions.get(key, 0)

    async def unwatch(self):
        self._watched = {}

    async def get(self, key):
        return await self._redis.get(key)

    def multi(self):
        self._queued = []

    def set(self, key, value):
        self._queued.append((key, value))
        return self

    async def execute(self):
        await self._redis._round_trip()
        try:
            if any(self._redis.versions.get(k, 0) != v for k, v in self._watched.items()):
                raise WatchError("watched key changed")
            for key, value in self._queued:
                self._redis._write(key, value)
            return [True] * len(self._queued)
        finally:
            self.reset()
