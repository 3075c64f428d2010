"""
Quote Engine — Call Budget Governor
─────────────────────────────────────
Daily call budget for the upstream quote API.
Prevents any burst of dashboard traffic from blowing through the quota.

Limits enforced (shared by every symbol, not per symbol):
  Alpha Vantage free tier:  25 req/day
  Minimum spacing:          MIN_CALL_INTERVAL between any two calls

Budget state lives in the store, one record per calendar day. A new day
starts a new record; yesterday's stays behind as history.

Checking and spending a call is one store transaction (try_acquire).
Within a process the governor's lock orders callers; across processes
sharing Redis the store's WATCH/MULTI does, so concurrent requests can
never spend more than DAILY_LIMIT.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from quote_engine.cache.store import KeyValueStore
from quote_engine.models.market_data import CallBudgetState

log = logging.getLogger("qe.rate_limiter")

DAILY_LIMIT       = 25
MIN_CALL_INTERVAL = timedelta(minutes=5)


class CallBudgetGovernor:

    def __init__(
        self,
        store: KeyValueStore,
        daily_limit: int = DAILY_LIMIT,
        min_interval: timedelta = MIN_CALL_INTERVAL,
    ):
        self.daily_limit  = daily_limit
        self.min_interval = min_interval
        self._store       = store
        self._lock        = asyncio.Lock()

    async def _load(self, now: datetime) -> CallBudgetState:
        state = await self._store.get_budget(now.date())
        return state or CallBudgetState(call_date=now.date())

    def _allows(self, state: CallBudgetState, now: datetime) -> bool:
        if state.call_count >= self.daily_limit:
            return False
        if state.last_call_at is not None and now - state.last_call_at < self.min_interval:
            return False
        return True

    async def can_call(self, symbol: str, now: datetime) -> bool:
        """Read-only check. Any read error counts as an exhausted budget."""
        try:
            state = await self._load(now)
        except Exception as e:
            log.warning(f"Budget read failed for {symbol}, denying call: {e}")
            return False
        return self._allows(state, now)

    @staticmethod
    def _spend(state: CallBudgetState, now: datetime) -> None:
        state.call_count  += 1
        state.last_call_at = now

    async def record_call(self, now: datetime) -> CallBudgetState:
        def spend(state: CallBudgetState) -> bool:
            self._spend(state, now)
            return True

        async with self._lock:
            _, state = await self._store.update_budget(now.date(), spend)
        return state

    async def try_acquire(self, symbol: str, now: datetime) -> bool:
        """
        Check and spend one call atomically.
        Returns False (and spends nothing) when the budget or spacing denies it.
        """
        def spend_if_allowed(state: CallBudgetState) -> bool:
            if not self._allows(state, now):
                return False
            self._spend(state, now)
            return True

        async with self._lock:
            try:
                granted, state = await self._store.update_budget(now.date(), spend_if_allowed)
            except Exception as e:
                log.warning(f"Budget update failed for {symbol}, denying call: {e}")
                return False
        if not granted:
            log.info(
                f"Budget denied {symbol}: {state.call_count}/{self.daily_limit} used"
                f"{self._spacing_note(state, now)}"
            )
            return False
        log.debug(f"Budget granted {symbol}: call {state.call_count}/{self.daily_limit}")
        return True

    def _spacing_note(self, state: CallBudgetState, now: datetime) -> str:
        if state.last_call_at is None or state.call_count >= self.daily_limit:
            return ""
        wait = self.min_interval - (now - state.last_call_at)
        return f", next call in {max(wait.total_seconds(), 0):.0f}s"

    async def status(self, now: datetime) -> dict:
        try:
            state: Optional[CallBudgetState] = await self._load(now)
        except Exception as e:
            log.warning(f"Budget read failed: {e}")
            state = None
        if state is None:
            return {"available": False, "daily_limit": self.daily_limit, "error": "budget unreadable"}
        return {
            "available":      self._allows(state, now),
            "call_date":      state.call_date.isoformat(),
            "call_count":     state.call_count,
            "remaining":      max(self.daily_limit - state.call_count, 0),
            "daily_limit":    self.daily_limit,
            "min_interval_s": int(self.min_interval.total_seconds()),
            "last_call_at":   state.last_call_at.isoformat() if state.last_call_at else None,
        }

