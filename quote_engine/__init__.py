"""
Quote Engine
─────────────
Market-data freshness, fallback and rate limiting for the stock dashboard.

    from quote_engine import Settings, build_engine
    engine = await build_engine(Settings.from_env())
    result = await engine.orchestrator.get_latest_quote("AAPL")
"""

from .engine import Engine, build_engine
from .models import DataKind, LookupResult, Source
from .settings import Settings

__all__ = ["Engine", "build_engine", "DataKind", "LookupResult", "Source", "Settings"]
