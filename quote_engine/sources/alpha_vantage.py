"""
Quote Engine — Alpha Vantage Source
─────────────────────────────────────
One outbound call per request, classified into a tagged result.
Returns FetchSuccess / FetchFailure. It does NOT touch the cache or the
call budget, and it never retries; a retry is the next request's job.

Endpoints:
  GLOBAL_QUOTE        → QuoteRecord
  TIME_SERIES_DAILY   → HistorySeries (most recent N days, oldest first)

Payload classification:
  {"Global Quote": {...}} with a price     → success
  {"Note": ...} / {"Information": ...}     → rate limited (AV answers 200 with a notice)
  {"Error Message": ...} / empty body      → not found
  fields present but unparseable           → malformed
  httpx timeout                            → timeout
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional, Union

import httpx

from quote_engine.models.market_data import (
    ErrorKind,
    FetchFailure,
    FetchResult,
    FetchSuccess,
    HistoryPoint,
    HistorySeries,
    QuoteRecord,
)
from quote_engine.sources.base import QuoteSource

log = logging.getLogger("qe.sources.alpha_vantage")

ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"
REQUEST_TIMEOUT   = 5.0
HISTORY_WINDOW    = 30

_RATE_LIMIT_KEYS = ("Note", "Information")


def _rate_limit_notice(data: dict) -> Optional[str]:
    for key in _RATE_LIMIT_KEYS:
        if key in data:
            return str(data[key])
    return None


def parse_global_quote(symbol: str, data: dict, fetched_at: datetime) -> FetchResult:
    notice = _rate_limit_notice(data)
    if notice:
        return FetchFailure(ErrorKind.UPSTREAM_RATE_LIMITED, notice[:200])
    if "Error Message" in data:
        return FetchFailure(ErrorKind.UPSTREAM_NOT_FOUND, str(data["Error Message"])[:200])

    quote = data.get("Global Quote")
    if not quote:
        return FetchFailure(ErrorKind.UPSTREAM_NOT_FOUND, f"no quote body for {symbol}")
    try:
        record = QuoteRecord(
            symbol=symbol,
            price=round(float(quote["05. price"]), 4),
            change_percent=round(float(str(quote.get("10. change percent", "0")).rstrip("%")), 4),
            volume=int(quote.get("06. volume") or 0),
            fetched_at=fetched_at,
            is_real=True,
        )
    except (KeyError, TypeError, ValueError) as e:
        return FetchFailure(ErrorKind.UPSTREAM_MALFORMED, f"quote parse error: {e}")
    return FetchSuccess(record)


def parse_daily_series(
    symbol: str, data: dict, fetched_at: datetime, window: int = HISTORY_WINDOW
) -> FetchResult:
    notice = _rate_limit_notice(data)
    if notice:
        return FetchFailure(ErrorKind.UPSTREAM_RATE_LIMITED, notice[:200])
    if "Error Message" in data:
        return FetchFailure(ErrorKind.UPSTREAM_NOT_FOUND, str(data["Error Message"])[:200])

    series = data.get("Time Series (Daily)")
    if not series:
        return FetchFailure(ErrorKind.UPSTREAM_NOT_FOUND, f"no time series for {symbol}")
    try:
        # newest first, keep the window, then flip to chronological order
        recent = sorted(series.items(), key=lambda kv: kv[0], reverse=True)[:window]
        points = tuple(
            HistoryPoint(
                date=date.fromisoformat(day),
                close=round(float(values["4. close"]), 4),
                volume=int(values.get("5. volume") or 0),
            )
            for day, values in reversed(recent)
        )
        history = HistorySeries(symbol=symbol, points=points, fetched_at=fetched_at, is_real=True)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        return FetchFailure(ErrorKind.UPSTREAM_MALFORMED, f"series parse error: {e}")
    return FetchSuccess(history)


class AlphaVantageSource(QuoteSource):
    """Fetches quotes and daily closes from Alpha Vantage through a shared httpx client."""

    name = "alpha_vantage"

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str = ALPHA_VANTAGE_URL,
        timeout: float = REQUEST_TIMEOUT,
        history_window: int = HISTORY_WINDOW,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._client        = client
        self.base_url       = base_url
        self.timeout        = timeout
        self.history_window = history_window
        self._clock         = clock

    async def _get(self, params: dict) -> Union[dict, FetchFailure]:
        label = f"{params.get('function')} {params.get('symbol')}"
        try:
            r = await self._client.get(self.base_url, params=params, timeout=self.timeout)
        except httpx.TimeoutException:
            log.warning(f"Timeout fetching {label}")
            return FetchFailure(ErrorKind.UPSTREAM_TIMEOUT, f"no response within {self.timeout}s")
        except httpx.HTTPError as e:
            log.warning(f"Transport error fetching {label}: {e}")
            return FetchFailure(ErrorKind.UPSTREAM_ERROR, str(e)[:200])

        if r.status_code == 429:
            log.warning(f"Rate limited (HTTP 429) on {label}")
            return FetchFailure(ErrorKind.UPSTREAM_RATE_LIMITED, "HTTP 429")
        if r.status_code != 200:
            log.warning(f"HTTP {r.status_code} from {label}")
            return FetchFailure(ErrorKind.UPSTREAM_ERROR, f"HTTP {r.status_code}")
        try:
            data = r.json()
        except ValueError:
            log.warning(f"Non-JSON body from {label}")
            return FetchFailure(ErrorKind.UPSTREAM_MALFORMED, "response is not JSON")
        if not isinstance(data, dict):
            return FetchFailure(ErrorKind.UPSTREAM_MALFORMED, "response is not a JSON object")
        return data

    async def fetch_quote(self, symbol: str, api_key: str) -> FetchResult:
        data = await self._get({"function": "GLOBAL_QUOTE", "symbol": symbol, "apikey": api_key})
        if isinstance(data, FetchFailure):
            return data
        result = parse_global_quote(symbol, data, self._clock())
        if isinstance(result, FetchFailure):
            log.warning(f"{symbol}: quote {result.kind.value} ({result.detail})")
        return result

    async def fetch_history(self, symbol: str, api_key: str) -> FetchResult:
        data = await self._get({"function": "TIME_SERIES_DAILY", "symbol": symbol, "apikey": api_key})
        if isinstance(data, FetchFailure):
            return data
        result = parse_daily_series(symbol, data, self._clock(), self.history_window)
        if isinstance(result, FetchFailure):
            log.warning(f"{symbol}: history {result.kind.value} ({result.detail})")
        return result
