"""
Quote Engine — Settings
─────────────────────────
Environment-driven configuration, plus the upstream API key provider.

Environment variables (.env supported via python-dotenv in the host):
  ALPHA_VANTAGE_API_KEY   = <key>                     # may be rotated at runtime
  REDIS_URL               = redis://localhost:6379    # unset → in-memory store
  QE_DAILY_CALL_LIMIT     = 25
  QE_MIN_CALL_INTERVAL_S  = 300
  QE_REQUEST_TIMEOUT_S    = 5
  QE_HISTORY_WINDOW       = 30
  QE_API_KEY_REFRESH_S    = 300
  QE_SYMBOLS              = AAPL,TSLA,BRK.B,SCT
  QE_SYNTHESIZE_ON_MISS   = true
  QE_BATCH_CONCURRENCY    = 5
  PORT                    = 8000
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from quote_engine.cache.store import KeyValueStore

log = logging.getLogger("qe.settings")

API_KEY_SETTING = "ALPHA_VANTAGE_API_KEY"
DEFAULT_SYMBOLS = ["AAPL", "TSLA", "BRK.B", "SCT"]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_symbols(name: str) -> List[str]:
    raw = os.environ.get(name, "")
    symbols = [s.strip().upper() for s in raw.split(",") if s.strip()]
    return symbols or list(DEFAULT_SYMBOLS)


@dataclass
class Settings:
    alpha_vantage_api_key: Optional[str] = None
    redis_url:             Optional[str] = None
    daily_call_limit:      int   = 25
    min_call_interval_s:   float = 300
    request_timeout_s:     float = 5.0
    history_window:        int   = 30
    api_key_refresh_s:     float = 300
    symbols:               List[str] = field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    synthesize_on_miss:    bool  = True
    batch_concurrency:     int   = 5
    port:                  int   = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            alpha_vantage_api_key=os.environ.get(API_KEY_SETTING) or None,
            redis_url=os.environ.get("REDIS_URL") or None,
            daily_call_limit=int(os.environ.get("QE_DAILY_CALL_LIMIT", "25")),
            min_call_interval_s=float(os.environ.get("QE_MIN_CALL_INTERVAL_S", "300")),
            request_timeout_s=float(os.environ.get("QE_REQUEST_TIMEOUT_S", "5")),
            history_window=int(os.environ.get("QE_HISTORY_WINDOW", "30")),
            api_key_refresh_s=float(os.environ.get("QE_API_KEY_REFRESH_S", "300")),
            symbols=_env_symbols("QE_SYMBOLS"),
            synthesize_on_miss=_env_bool("QE_SYNTHESIZE_ON_MISS", True),
            batch_concurrency=int(os.environ.get("QE_BATCH_CONCURRENCY", "5")),
            port=int(os.environ.get("PORT", "8000")),
        )


# ══════════════════════════════════════════════════════════════
# API KEY PROVIDER
# ══════════════════════════════════════════════════════════════
KeyLoader = Callable[[], Awaitable[Optional[str]]]


def env_key_loader(var: str = API_KEY_SETTING, default: Optional[str] = None) -> KeyLoader:
    async def _load() -> Optional[str]:
        return os.environ.get(var) or default
    return _load


def store_key_loader(store: KeyValueStore, fallback: Optional[KeyLoader] = None) -> KeyLoader:
    """Key from the settings store (admin-rotated), falling back to `fallback` when unset."""
    async def _load() -> Optional[str]:
        key = await store.get_setting(API_KEY_SETTING)
        if key:
            return key
        return await fallback() if fallback else None
    return _load


class ApiKeyProvider:
    """
    Short-lived in-memory copy of the upstream API key.
    Re-read from the loader every `refresh_interval` seconds so a rotated
    key takes effect without a restart.
    """

    def __init__(
        self,
        loader: KeyLoader,
        refresh_interval: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader   = loader
        self._interval = refresh_interval
        self._clock    = clock
        self._key: Optional[str] = None
        self._loaded_at: Optional[float] = None

    async def get(self) -> Optional[str]:
        now = self._clock()
        if self._key and self._loaded_at is not None and now - self._loaded_at < self._interval:
            return self._key
        try:
            key = await self._loader()
        except Exception as e:
            log.warning(f"API key load failed: {e}")
            # keep serving the last good key rather than none at all
            return self._key
        self._key, self._loaded_at = key, now
        if not key:
            log.warning("No upstream API key configured")
        return key

    def invalidate(self) -> None:
        self._key, self._loaded_at = None, None


async def update_api_key(store: KeyValueStore, provider: ApiKeyProvider, key: str) -> None:
    """Persist a rotated key and drop the cached copy so the next call uses it."""
    await store.set_setting(API_KEY_SETTING, key)
    provider.invalidate()
    log.info("Upstream API key updated")
