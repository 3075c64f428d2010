"""
Quote Engine — Composition Root
─────────────────────────────────
Wires store, cache, governor, source, synthesizer and key provider into
one FallbackOrchestrator. Built once at host startup, closed at shutdown.

Usage (from app.py):
    engine = await build_engine(Settings.from_env())
    result = await engine.orchestrator.get_latest_quote("AAPL")
    ...
    await engine.close()
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx

from quote_engine.cache.freshness import FreshnessCache
from quote_engine.cache.store import KeyValueStore, connect_store
from quote_engine.cache.ttl_config import TTLPolicy
from quote_engine.orchestrator.fallback import FallbackOrchestrator
from quote_engine.orchestrator.rate_limiter import CallBudgetGovernor
from quote_engine.settings import ApiKeyProvider, Settings, env_key_loader, store_key_loader
from quote_engine.sources.alpha_vantage import AlphaVantageSource
from quote_engine.sources.base import QuoteSource
from quote_engine.sources.synthetic import SyntheticGenerator

log = logging.getLogger("qe.engine")


@dataclass
class Engine:
    settings:     Settings
    store:        KeyValueStore
    orchestrator: FallbackOrchestrator
    api_keys:     ApiKeyProvider
    http_client:  Optional[httpx.AsyncClient] = None

    async def close(self):
        if self.http_client is not None and not self.http_client.is_closed:
            await self.http_client.aclose()
        await self.store.close()


async def build_engine(
    settings: Settings,
    store: Optional[KeyValueStore] = None,
    source: Optional[QuoteSource] = None,
    synthesizer: Optional[SyntheticGenerator] = None,
    ttl_policy: Optional[TTLPolicy] = None,
) -> Engine:
    if store is None:
        store = await connect_store(settings.redis_url)

    http_client = None
    if source is None:
        http_client = httpx.AsyncClient(
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            timeout=settings.request_timeout_s,
        )
        source = AlphaVantageSource(
            http_client,
            timeout=settings.request_timeout_s,
            history_window=settings.history_window,
        )

    api_keys = ApiKeyProvider(
        store_key_loader(store, fallback=env_key_loader(default=settings.alpha_vantage_api_key)),
        refresh_interval=settings.api_key_refresh_s,
    )

    orchestrator = FallbackOrchestrator(
        cache=FreshnessCache(store, ttl_policy),
        governor=CallBudgetGovernor(
            store,
            daily_limit=settings.daily_call_limit,
            min_interval=timedelta(seconds=settings.min_call_interval_s),
        ),
        source=source,
        synthesizer=synthesizer or SyntheticGenerator(history_window=settings.history_window),
        api_keys=api_keys,
        synthesize_on_miss=settings.synthesize_on_miss,
        symbols=settings.symbols,
        batch_concurrency=settings.batch_concurrency,
    )
    log.info(
        f"Quote engine ready: store={store.name} source={source.name} "
        f"budget={settings.daily_call_limit}/day spacing={settings.min_call_interval_s:.0f}s"
    )
    return Engine(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        api_keys=api_keys,
        http_client=http_client,
    )
