"""
Quote Engine — Market Clock
─────────────────────────────
Answers one question: is the US equity market trading right now?

Simplified model, evaluated on the host's local clock:
  Mon–Fri  09:00 – 16:00  → open
  Mon–Fri  otherwise      → closed (weekday)
  Sat–Sun                 → closed (weekend)

Exchange holidays, the 09:30 open and timezone conversion are not
modelled. The session tier only drives cache TTLs, so an hour of skew
costs at most one early or late refresh.
"""

from datetime import datetime
from enum import Enum

MARKET_OPEN_HOUR  = 9
MARKET_CLOSE_HOUR = 16


class SessionTier(str, Enum):
    OPEN           = "open"
    CLOSED_WEEKDAY = "closed_weekday"
    CLOSED_WEEKEND = "closed_weekend"


def _is_weekend(now: datetime) -> bool:
    return now.weekday() >= 5   # Sat=5, Sun=6


def is_market_open(now: datetime) -> bool:
    if _is_weekend(now):
        return False
    return MARKET_OPEN_HOUR <= now.hour < MARKET_CLOSE_HOUR


def session_tier(now: datetime) -> SessionTier:
    if _is_weekend(now):
        return SessionTier.CLOSED_WEEKEND
    if is_market_open(now):
        return SessionTier.OPEN
    return SessionTier.CLOSED_WEEKDAY
