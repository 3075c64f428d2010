"""
Quote Engine — TTL Configuration
─────────────────────────────────
Single source of truth for cache durations.
Organised by market session, i.e. how fast the real world changes.

During trading hours a print goes stale within minutes. After the close
the last print stays valid until the next open, and over a weekend no
new prints arrive at all.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from quote_engine.models.market_data import DataKind
from quote_engine.orchestrator.market_clock import SessionTier, session_tier

# ── Per session-tier TTL (seconds) ────────────────────────────

TTL: Dict[SessionTier, Dict[DataKind, int]] = {
    # Market open: quote API budget is 25/day, so "fresh" means minutes, not seconds
    SessionTier.OPEN: {
        DataKind.QUOTE:   15 * 60,        # 15 minutes
        DataKind.HISTORY: 60 * 60,        # 1 hour   (daily bars, today's bar still moving)
    },

    # Weekday, outside 09:00–16:00: the close is the close
    SessionTier.CLOSED_WEEKDAY: {
        DataKind.QUOTE:   4 * 3600,       # 4 hours
        DataKind.HISTORY: 12 * 3600,      # 12 hours
    },

    # Weekend: nothing prints until Monday
    SessionTier.CLOSED_WEEKEND: {
        DataKind.QUOTE:   24 * 3600,      # 1 day
        DataKind.HISTORY: 24 * 3600,      # 1 day
    },
}


@dataclass(frozen=True)
class TTLPolicy:
    """TTL lookup keyed by (session tier, data kind). Override per deployment or test."""

    table: Dict[SessionTier, Dict[DataKind, int]] = field(default_factory=lambda: TTL)

    def seconds(self, kind: DataKind, tier: SessionTier) -> int:
        return self.table[tier][kind]

    def ttl_for(self, kind: DataKind, now: datetime) -> timedelta:
        return timedelta(seconds=self.seconds(kind, session_tier(now)))

    @classmethod
    def with_overrides(
        cls, overrides: Optional[Dict[Tuple[SessionTier, DataKind], int]] = None
    ) -> "TTLPolicy":
        table = {tier: dict(kinds) for tier, kinds in TTL.items()}
        for (tier, kind), secs in (overrides or {}).items():
            table[tier][kind] = secs
        return cls(table=table)
