import asyncio

from quote_engine.cache.store import MemoryStore
from quote_engine.settings import (
    API_KEY_SETTING,
    ApiKeyProvider,
    Settings,
    env_key_loader,
    store_key_loader,
    update_api_key,
)

ENV_VARS = [
    "ALPHA_VANTAGE_API_KEY", "REDIS_URL", "QE_DAILY_CALL_LIMIT", "QE_MIN_CALL_INTERVAL_S",
    "QE_REQUEST_TIMEOUT_S", "QE_HISTORY_WINDOW", "QE_API_KEY_REFRESH_S", "QE_SYMBOLS",
    "QE_SYNTHESIZE_ON_MISS", "QE_BATCH_CONCURRENCY", "PORT",
]


class Ticker:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


class CountingLoader:
    def __init__(self, keys):
        self.keys = list(keys)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        key = self.keys[min(self.calls, len(self.keys)) - 1]
        if isinstance(key, Exception):
            raise key
        return key


def test_settings_defaults(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    s = Settings.from_env()
    assert s.alpha_vantage_api_key is None
    assert s.redis_url is None
    assert s.daily_call_limit == 25
    assert s.min_call_interval_s == 300
    assert s.history_window == 30
    assert s.symbols == ["AAPL", "TSLA", "BRK.B", "SCT"]
    assert s.synthesize_on_miss is True


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("QE_DAILY_CALL_LIMIT", "500")
    monkeypatch.setenv("QE_MIN_CALL_INTERVAL_S", "0")
    monkeypatch.setenv("QE_SYMBOLS", "aapl, msft,,")
    monkeypatch.setenv("QE_SYNTHESIZE_ON_MISS", "false")
    monkeypatch.setenv("ALPHA_VANTAGE_API_KEY", "k-123")
    s = Settings.from_env()
    assert s.daily_call_limit == 500
    assert s.min_call_interval_s == 0
    assert s.symbols == ["AAPL", "MSFT"]
    assert s.synthesize_on_miss is False
    assert s.alpha_vantage_api_key == "k-123"


def test_key_cached_until_refresh_interval():
    async def scenario():
        ticker = Ticker()
        loader = CountingLoader(["k1", "k2"])
        provider = ApiKeyProvider(loader, refresh_interval=300, clock=ticker)
        assert await provider.get() == "k1"
        ticker.t = 299
        assert await provider.get() == "k1"
        assert loader.calls == 1
        ticker.t = 300
        assert await provider.get() == "k2"
        assert loader.calls == 2

    asyncio.run(scenario())


def test_invalidate_forces_reload():
    async def scenario():
        loader = CountingLoader(["k1", "k2"])
        provider = ApiKeyProvider(loader, clock=Ticker())
        await provider.get()
        provider.invalidate()
        assert await provider.get() == "k2"

    asyncio.run(scenario())


def test_loader_failure_keeps_last_key():
    async def scenario():
        ticker = Ticker()
        provider = ApiKeyProvider(CountingLoader(["k1", ConnectionError("down")]), clock=ticker)
        assert await provider.get() == "k1"
        ticker.t = 1000
        assert await provider.get() == "k1"

    asyncio.run(scenario())


def test_store_key_falls_back_to_env(monkeypatch):
    monkeypatch.setenv(API_KEY_SETTING, "from-env")

    async def scenario():
        store = MemoryStore()
        load = store_key_loader(store, fallback=env_key_loader())
        assert await load() == "from-env"
        await store.set_setting(API_KEY_SETTING, "from-store")
        assert await load() == "from-store"

    asyncio.run(scenario())


def test_update_api_key_takes_effect_immediately(monkeypatch):
    monkeypatch.delenv(API_KEY_SETTING, raising=False)

    async def scenario():
        store = MemoryStore()
        provider = ApiKeyProvider(store_key_loader(store, fallback=env_key_loader(default="old")))
        assert await provider.get() == "old"
        await update_api_key(store, provider, "rotated")
        assert await store.get_setting(API_KEY_SETTING) == "rotated"
        assert await provider.get() == "rotated"

    asyncio.run(scenario())
