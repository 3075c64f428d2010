"""
Quote Engine — Synthetic Data Generator
─────────────────────────────────────────
Last-resort data when there is no real data and no way to get any.
Everything produced here has is_real=False.

Values are anchored to a per-symbol base price so the dashboard stays
plausible. The shape is always exact: a series has every calendar day
of the window, oldest first.
"""

import logging
import random
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from quote_engine.models.market_data import (
    DataKind,
    HistoryPoint,
    HistorySeries,
    MarketValue,
    QuoteRecord,
)

log = logging.getLogger("qe.synthetic")

DEFAULT_BASE_PRICES: Dict[str, float] = {
    "AAPL":  170.0,
    "TSLA":  240.0,
    "BRK.B": 360.0,
    "SCT":   1450.0,
}
DEFAULT_BASE_PRICE = 100.0

MAX_QUOTE_MOVE_PCT = 2.0              # quote: base ± 2%
MAX_DAILY_MOVE     = 0.02             # series: each day ± 2% of the previous close
VOLUME_RANGE: Tuple[int, int] = (500_000, 1_500_000)
HISTORY_WINDOW     = 30


class SyntheticGenerator:

    def __init__(
        self,
        base_prices: Optional[Dict[str, float]] = None,
        default_base_price: float = DEFAULT_BASE_PRICE,
        max_quote_move_pct: float = MAX_QUOTE_MOVE_PCT,
        max_daily_move: float = MAX_DAILY_MOVE,
        volume_range: Tuple[int, int] = VOLUME_RANGE,
        history_window: int = HISTORY_WINDOW,
        rng: Optional[random.Random] = None,
    ):
        if not 0 <= max_daily_move < 1:
            raise ValueError("max_daily_move must be in [0, 1)")
        if not 0 <= max_quote_move_pct < 100:
            raise ValueError("max_quote_move_pct must be in [0, 100)")
        self.base_prices        = {k.upper(): float(v) for k, v in (base_prices or DEFAULT_BASE_PRICES).items()}
        self.default_base_price = default_base_price
        self.max_quote_move_pct = max_quote_move_pct
        self.max_daily_move     = max_daily_move
        self.volume_range       = volume_range
        self.history_window     = history_window
        self._rng               = rng or random.Random()

    def base_price(self, symbol: str) -> float:
        return self.base_prices.get(symbol.upper(), self.default_base_price)

    def _volume(self) -> int:
        low, high = self.volume_range
        return self._rng.randrange(low, high)

    def quote(self, symbol: str, now: datetime) -> QuoteRecord:
        change_pct = round(self._rng.uniform(-self.max_quote_move_pct, self.max_quote_move_pct), 2)
        price = self.base_price(symbol) * (1 + change_pct / 100)
        return QuoteRecord(
            symbol=symbol,
            price=round(price, 2),
            change_percent=change_pct,
            volume=self._volume(),
            fetched_at=now,
            is_real=False,
        )

    def history(self, symbol: str, now: datetime, length: Optional[int] = None) -> HistorySeries:
        length = length or self.history_window
        start = now.date() - timedelta(days=length - 1)
        price = self.base_price(symbol)
        points = []
        for i in range(length):
            if i:
                price *= 1 + self._rng.uniform(-self.max_daily_move, self.max_daily_move)
            points.append(HistoryPoint(
                date=start + timedelta(days=i),
                close=round(price, 2),
                volume=self._volume(),
            ))
        return HistorySeries(symbol=symbol, points=tuple(points), fetched_at=now, is_real=False)

    def synthesize(self, symbol: str, kind: DataKind, now: datetime) -> MarketValue:
        log.info(f"{symbol}: generating synthetic {kind.value}")
        if kind is DataKind.QUOTE:
            return self.quote(symbol, now)
        return self.history(symbol, now)
