"""
Quote Engine — Fallback Orchestrator
──────────────────────────────────────
Decides, per (kind, symbol), where the answer comes from:

  1. fresh cache entry              → serve it, no upstream call
  2. budget granted + upstream OK   → write through, serve live (real)
  3. any cached entry, however old  → serve it flagged stale
  4. nothing cached                 → synthesize, cache as non-real, serve

A single-symbol lookup never raises. Upstream timeouts, rate limits,
budget denials and cache I/O errors all end in case 3 or 4, recorded in
LookupResult.errors. The only non-answer is UNAVAILABLE, and only when
synthesis has been switched off and the cache is empty.

Batches fan out one task per symbol. A failure for one symbol never
blocks or spoils its siblings.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from quote_engine.cache.freshness import FreshnessCache
from quote_engine.exceptions import CacheIOError
from quote_engine.models.market_data import (
    CacheEntry,
    DataKind,
    ErrorKind,
    FetchFailure,
    FetchResult,
    LookupResult,
    MarketValue,
    Source,
    normalise_symbol,
)
from quote_engine.orchestrator.rate_limiter import CallBudgetGovernor
from quote_engine.settings import ApiKeyProvider
from quote_engine.sources.base import QuoteSource
from quote_engine.sources.synthetic import SyntheticGenerator

log = logging.getLogger("qe.fallback")


class FallbackOrchestrator:

    def __init__(
        self,
        cache: FreshnessCache,
        governor: CallBudgetGovernor,
        source: QuoteSource,
        synthesizer: SyntheticGenerator,
        api_keys: ApiKeyProvider,
        clock: Callable[[], datetime] = datetime.now,
        synthesize_on_miss: bool = True,
        symbols: Optional[List[str]] = None,
        batch_concurrency: int = 5,
    ):
        self.cache              = cache
        self.governor           = governor
        self.source             = source
        self.synthesizer        = synthesizer
        self.api_keys           = api_keys
        self.synthesize_on_miss = synthesize_on_miss
        self.symbols            = [normalise_symbol(s) for s in (symbols or [])]
        self._clock             = clock
        self._batch_concurrency = batch_concurrency

    # ── Single symbol ─────────────────────────────────────────

    async def get_latest_quote(self, symbol: str) -> LookupResult:
        return await self.lookup(DataKind.QUOTE, symbol)

    async def get_history(self, symbol: str) -> LookupResult:
        return await self.lookup(DataKind.HISTORY, symbol)

    async def lookup(self, kind: DataKind, symbol: str) -> LookupResult:
        symbol = normalise_symbol(symbol)
        if not symbol:
            raise ValueError("symbol must be a non-empty string")

        now = self._clock()
        errors: List[ErrorKind] = []

        # Fast path: no lock while the entry is fresh
        entry = await self._read(kind, symbol, errors)
        if entry is not None and self.cache.is_fresh(entry, now):
            log.debug(f"{symbol}: fresh {kind.value} hit (age={entry.age_seconds(now):.0f}s)")
            return LookupResult(symbol, kind, entry.value, Source.CACHE, errors=errors)

        async with self.cache.locked(kind, symbol):
            # Someone may have refreshed this key while we waited
            entry = await self._read(kind, symbol, errors)
            if entry is not None and self.cache.is_fresh(entry, now):
                return LookupResult(symbol, kind, entry.value, Source.CACHE, errors=errors)

            fetched = await self._call_upstream(kind, symbol, now, errors)
            if not isinstance(fetched, FetchFailure):
                await self._write(kind, symbol, fetched.value, now, errors)
                log.info(f"{symbol}: live {kind.value} from {self.source.name}")
                return LookupResult(symbol, kind, fetched.value, Source.UPSTREAM, errors=errors)

            if entry is not None:
                log.warning(
                    f"{symbol}: serving stale {kind.value} "
                    f"(age={entry.age_seconds(now):.0f}s, reason={fetched.kind.value})"
                )
                return LookupResult(symbol, kind, entry.value, Source.STALE_CACHE, stale=True, errors=errors)

            if not self.synthesize_on_miss:
                log.warning(f"{symbol}: {kind.value} unavailable (reason={fetched.kind.value})")
                return LookupResult(symbol, kind, None, Source.UNAVAILABLE, errors=errors)

            value = self.synthesizer.synthesize(symbol, kind, now)
            if ErrorKind.CACHE_IO_ERROR in errors:
                # the store may still hold real data we could not read
                log.warning(f"{symbol}: synthetic {kind.value} not cached after a failed read")
            else:
                await self._write(kind, symbol, value, now, errors)
            log.warning(f"{symbol}: serving synthetic {kind.value} (reason={fetched.kind.value})")
            return LookupResult(symbol, kind, value, Source.SYNTHETIC, errors=errors)

    # ── Batches ───────────────────────────────────────────────

    async def get_quotes(self, symbols: Iterable[str]) -> Dict[str, LookupResult]:
        return await self.lookup_many(DataKind.QUOTE, symbols)

    async def get_histories(self, symbols: Iterable[str]) -> Dict[str, LookupResult]:
        return await self.lookup_many(DataKind.HISTORY, symbols)

    async def get_market_overview(self) -> Dict[str, LookupResult]:
        return await self.get_quotes(self.symbols)

    async def lookup_many(self, kind: DataKind, symbols: Iterable[str]) -> Dict[str, LookupResult]:
        syms = list(dict.fromkeys(s for s in (normalise_symbol(x) for x in symbols) if s))
        limiter = asyncio.Semaphore(self._batch_concurrency)

        async def one(sym: str) -> LookupResult:
            async with limiter:
                return await self.lookup(kind, sym)

        raw = await asyncio.gather(*[one(s) for s in syms], return_exceptions=True)

        results: Dict[str, LookupResult] = {}
        for sym, r in zip(syms, raw):
            if isinstance(r, Exception):
                log.error(f"{sym}: {kind.value} lookup failed unexpectedly: {r!r}")
                r = self._emergency(kind, sym)
            results[sym] = r
        return results

    # ── Internals ─────────────────────────────────────────────

    async def _read(self, kind: DataKind, symbol: str, errors: List[ErrorKind]) -> Optional[CacheEntry]:
        try:
            return await self.cache.get(kind, symbol)
        except CacheIOError as e:
            log.warning(f"{symbol}: cache read failed, treating as miss: {e}")
            if ErrorKind.CACHE_IO_ERROR not in errors:
                errors.append(ErrorKind.CACHE_IO_ERROR)
            return None

    async def _write(
        self, kind: DataKind, symbol: str, value: MarketValue, now: datetime, errors: List[ErrorKind]
    ) -> None:
        try:
            await self.cache.put(kind, symbol, value, now)
        except CacheIOError as e:
            log.error(f"{symbol}: cache write failed, returning value uncached: {e}")
            if ErrorKind.CACHE_IO_ERROR not in errors:
                errors.append(ErrorKind.CACHE_IO_ERROR)

    async def _call_upstream(
        self, kind: DataKind, symbol: str, now: datetime, errors: List[ErrorKind]
    ) -> FetchResult:
        api_key = await self.api_keys.get()
        if not api_key:
            errors.append(ErrorKind.UPSTREAM_ERROR)
            return FetchFailure(ErrorKind.UPSTREAM_ERROR, "no API key configured")

        if not await self.governor.try_acquire(symbol, now):
            errors.append(ErrorKind.BUDGET_EXHAUSTED)
            return FetchFailure(ErrorKind.BUDGET_EXHAUSTED, "daily budget or call spacing")

        try:
            result = await self.source.fetch(kind, symbol, api_key)
        except Exception as e:
            # sources are meant to classify their own failures; guard anyway
            log.error(f"{symbol}: {self.source.name} raised {e!r}")
            result = FetchFailure(ErrorKind.UPSTREAM_ERROR, str(e)[:200])

        if isinstance(result, FetchFailure):
            errors.append(result.kind)
        return result

    def _emergency(self, kind: DataKind, symbol: str) -> LookupResult:
        """Uncached synthetic answer for a lookup that blew up outside the normal paths."""
        if not self.synthesize_on_miss:
            return LookupResult(symbol, kind, None, Source.UNAVAILABLE, errors=[ErrorKind.UPSTREAM_ERROR])
        value = self.synthesizer.synthesize(symbol, kind, self._clock())
        return LookupResult(symbol, kind, value, Source.SYNTHETIC, errors=[ErrorKind.UPSTREAM_ERROR])
