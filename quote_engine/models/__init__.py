from .market_data import (
    CacheEntry,
    CallBudgetState,
    DataKind,
    ErrorKind,
    FetchFailure,
    FetchResult,
    FetchSuccess,
    HistoryPoint,
    HistorySeries,
    LookupResult,
    MarketValue,
    QuoteRecord,
    Source,
    normalise_symbol,
)

__all__ = [
    "CacheEntry", "CallBudgetState", "DataKind", "ErrorKind",
    "FetchFailure", "FetchResult", "FetchSuccess", "HistoryPoint",
    "HistorySeries", "LookupResult", "MarketValue", "QuoteRecord",
    "Source", "normalise_symbol",
]
