"""
Quote Engine — Market Data Model
──────────────────────────────────
Canonical value objects passed between the source adapters, the
freshness cache and the fallback orchestrator.

Every QuoteRecord / HistorySeries carries `is_real`:
  True  → came from the upstream quote API
  False → produced by the synthetic generator

Records are immutable. A refresh produces a new record that supersedes
the old one in the cache; nothing is ever edited in place.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class DataKind(str, Enum):
    QUOTE   = "quote"
    HISTORY = "history"


class ErrorKind(str, Enum):
    UPSTREAM_TIMEOUT      = "upstream_timeout"
    UPSTREAM_RATE_LIMITED = "upstream_rate_limited"
    UPSTREAM_NOT_FOUND    = "upstream_not_found"
    UPSTREAM_MALFORMED    = "upstream_malformed"
    UPSTREAM_ERROR        = "upstream_error"
    BUDGET_EXHAUSTED      = "budget_exhausted"
    CACHE_IO_ERROR        = "cache_io_error"


def normalise_symbol(symbol: str) -> str:
    return (symbol or "").upper().strip()


# ── Quotes ────────────────────────────────────────────────────
@dataclass(frozen=True)
class QuoteRecord:
    symbol:         str
    price:          float
    change_percent: float
    volume:         int
    fetched_at:     datetime
    is_real:        bool

    def __post_init__(self):
        if not self.symbol or self.symbol != self.symbol.upper().strip():
            raise ValueError(f"symbol must be a non-empty uppercase ticker: {self.symbol!r}")
        if not self.price > 0:
            raise ValueError(f"price must be positive for {self.symbol}: {self.price!r}")
        if self.volume < 0:
            raise ValueError(f"volume must be non-negative for {self.symbol}: {self.volume!r}")

    def to_dict(self) -> dict:
        return {
            "symbol":         self.symbol,
            "price":          self.price,
            "change_percent": self.change_percent,
            "volume":         self.volume,
            "fetched_at":     self.fetched_at.isoformat(),
            "is_real":        self.is_real,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "QuoteRecord":
        return cls(
            symbol=d["symbol"],
            price=float(d["price"]),
            change_percent=float(d["change_percent"]),
            volume=int(d["volume"]),
            fetched_at=datetime.fromisoformat(d["fetched_at"]),
            is_real=bool(d["is_real"]),
        )


# ── History ───────────────────────────────────────────────────
@dataclass(frozen=True)
class HistoryPoint:
    date:   date
    close:  float
    volume: int

    def __post_init__(self):
        if not self.close > 0:
            raise ValueError(f"close must be positive on {self.date}: {self.close!r}")
        if self.volume < 0:
            raise ValueError(f"volume must be non-negative on {self.date}: {self.volume!r}")


@dataclass(frozen=True)
class HistorySeries:
    """
    Daily closes for one symbol, oldest first.

    Provenance is tracked for the whole series: a refresh replaces every
    point at once, so a series is never part real and part synthetic.
    """
    symbol:     str
    points:     Tuple[HistoryPoint, ...]
    fetched_at: datetime
    is_real:    bool

    def __post_init__(self):
        if not self.symbol or self.symbol != self.symbol.upper().strip():
            raise ValueError(f"symbol must be a non-empty uppercase ticker: {self.symbol!r}")
        object.__setattr__(self, "points", tuple(self.points))
        for prev, cur in zip(self.points, self.points[1:]):
            if cur.date <= prev.date:
                raise ValueError(
                    f"{self.symbol}: history dates must be strictly ascending "
                    f"({prev.date} then {cur.date})"
                )

    def __len__(self) -> int:
        return len(self.points)

    @property
    def dates(self) -> Tuple[date, ...]:
        return tuple(p.date for p in self.points)

    @property
    def closes(self) -> Tuple[float, ...]:
        return tuple(p.close for p in self.points)

    def to_dict(self) -> dict:
        return {
            "symbol":     self.symbol,
            "points":     [
                {"date": p.date.isoformat(), "close": p.close, "volume": p.volume}
                for p in self.points
            ],
            "fetched_at": self.fetched_at.isoformat(),
            "is_real":    self.is_real,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "HistorySeries":
        return cls(
            symbol=d["symbol"],
            points=tuple(
                HistoryPoint(
                    date=date.fromisoformat(p["date"]),
                    close=float(p["close"]),
                    volume=int(p["volume"]),
                )
                for p in d.get("points", [])
            ),
            fetched_at=datetime.fromisoformat(d["fetched_at"]),
            is_real=bool(d["is_real"]),
        )


MarketValue = Union[QuoteRecord, HistorySeries]

_VALUE_TYPES = {
    DataKind.QUOTE:   QuoteRecord,
    DataKind.HISTORY: HistorySeries,
}


# ── Cache entry ───────────────────────────────────────────────
@dataclass(frozen=True)
class CacheEntry:
    kind:      DataKind
    symbol:    str
    value:     MarketValue
    stored_at: datetime

    def __post_init__(self):
        expected = _VALUE_TYPES[self.kind]
        if not isinstance(self.value, expected):
            raise TypeError(
                f"{self.kind.value} entry for {self.symbol} must hold "
                f"{expected.__name__}, got {type(self.value).__name__}"
            )

    @property
    def is_real(self) -> bool:
        return self.value.is_real

    def age_seconds(self, now: datetime) -> float:
        return (now - self.stored_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "kind":      self.kind.value,
            "symbol":    self.symbol,
            "value":     self.value.to_dict(),
            "stored_at": self.stored_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CacheEntry":
        kind = DataKind(d["kind"])
        return cls(
            kind=kind,
            symbol=d["symbol"],
            value=_VALUE_TYPES[kind].from_dict(d["value"]),
            stored_at=datetime.fromisoformat(d["stored_at"]),
        )


# ── Daily call budget ─────────────────────────────────────────
@dataclass
class CallBudgetState:
    call_date:    date
    call_count:   int = 0
    last_call_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "call_date":    self.call_date.isoformat(),
            "call_count":   self.call_count,
            "last_call_at": self.last_call_at.isoformat() if self.last_call_at else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CallBudgetState":
        last = d.get("last_call_at")
        return cls(
            call_date=date.fromisoformat(d["call_date"]),
            call_count=int(d.get("call_count", 0)),
            last_call_at=datetime.fromisoformat(last) if last else None,
        )


# ── Upstream fetch result ─────────────────────────────────────
@dataclass(frozen=True)
class FetchSuccess:
    value: MarketValue


@dataclass(frozen=True)
class FetchFailure:
    kind:   ErrorKind
    detail: str = ""


FetchResult = Union[FetchSuccess, FetchFailure]


# ── Orchestrator output ───────────────────────────────────────
class Source(str, Enum):
    CACHE       = "cache"         # fresh cache hit
    UPSTREAM    = "upstream"      # fetched live this request
    STALE_CACHE = "stale_cache"   # last known value, past its TTL
    SYNTHETIC   = "synthetic"     # generated this request
    UNAVAILABLE = "unavailable"


@dataclass
class LookupResult:
    symbol: str
    kind:   DataKind
    value:  Optional[MarketValue]
    source: Source
    stale:  bool = False
    errors: list = field(default_factory=list)

    @property
    def is_real(self) -> bool:
        return bool(self.value is not None and self.value.is_real)

    @property
    def available(self) -> bool:
        return self.value is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol":  self.symbol,
            "kind":    self.kind.value,
            "source":  self.source.value,
            "cached":  self.source in (Source.CACHE, Source.STALE_CACHE),
            "stale":   self.stale,
            "is_real": self.is_real,
            "errors":  [e.value for e in self.errors],
            "data":    self.value.to_dict() if self.value is not None else None,
        }
