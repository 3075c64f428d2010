"""
Quote Engine — Quote Source Base
──────────────────────────────────
All upstream quote sources inherit from QuoteSource.

Subclasses must implement:
  - name: str
  - fetch_quote(symbol, api_key)   -> FetchSuccess[QuoteRecord]   | FetchFailure
  - fetch_history(symbol, api_key) -> FetchSuccess[HistorySeries] | FetchFailure

Sources classify their own failures and never raise; the orchestrator
only ever sees a tagged result.
"""

from abc import ABC, abstractmethod

from quote_engine.models.market_data import DataKind, FetchResult


class QuoteSource(ABC):

    name: str = "upstream"

    @abstractmethod
    async def fetch_quote(self, symbol: str, api_key: str) -> FetchResult: ...

    @abstractmethod
    async def fetch_history(self, symbol: str, api_key: str) -> FetchResult: ...

    async def fetch(self, kind: DataKind, symbol: str, api_key: str) -> FetchResult:
        if kind is DataKind.QUOTE:
            return await self.fetch_quote(symbol, api_key)
        return await self.fetch_history(symbol, api_key)
