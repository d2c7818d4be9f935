"""
risk.limits
-----------
Position-limit ledger per (configuration set, symbol, combination, direction).

- ensure    : lazily create the ledger row when a combination first validates;
              a cap lowered below the open count is held back until positions close
- can_open  : capacity + cooldown check
- on_open   : increment (refused at capacity), optional post-open cooldown
- on_close  : decrement with floor 0; going below 0 is clamped and flagged
- hold      : per-key lock so callers can make "write position + move counter" one unit
- reconcile : align counters with the open positions found at startup

Locks are per key; unrelated keys never wait on each other. Every mutation is
persisted through the store before the method returns.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterator, Mapping, Optional

from models.position import LimitKey, PositionLimit
from storage.base import Store
from utils.errors import ConcurrencyViolation
from utils.logger import get_logger

log = get_logger(__name__)


class LimitState(str, Enum):
    IDLE = "idle"
    HAS_CAPACITY = "has_capacity"
    AT_CAPACITY = "at_capacity"
    COOLDOWN = "cooldown"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PositionLimitTracker:
    def __init__(self, store: Store, default_max_positions: int = 1):
        self.store = store
        self.default_max_positions = int(default_max_positions)
        self._locks: Dict[LimitKey, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ---- locking ----
    def _lock_for(self, key: LimitKey) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, key: LimitKey) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield

    # ---- queries ----
    def get(self, key: LimitKey) -> Optional[PositionLimit]:
        return self.store.load_position_limit(key)

    def state(self, key: LimitKey, now: Optional[datetime] = None) -> LimitState:
        now = now or _now()
        lim = self.store.load_position_limit(key)
        if lim is None or (lim.current_positions == 0 and lim.last_position_opened_at is None):
            return LimitState.IDLE
        if lim.cooldown_until is not None and now < lim.cooldown_until:
            return LimitState.COOLDOWN
        if lim.current_positions >= lim.max_positions:
            return LimitState.AT_CAPACITY
        return LimitState.HAS_CAPACITY

    def can_open(self, key: LimitKey, now: Optional[datetime] = None) -> bool:
        now = now or _now()
        with self.hold(key):
            lim = self.store.load_position_limit(key)
            return self._has_room(lim, now)

    @staticmethod
    def _has_room(lim: Optional[PositionLimit], now: datetime) -> bool:
        if lim is None:
            return False
        if lim.current_positions >= lim.max_positions:
            return False
        if lim.cooldown_until is not None and now < lim.cooldown_until:
            return False
        return True

    # ---- mutations ----
    def ensure(self, key: LimitKey, max_positions: Optional[int] = None,
               now: Optional[datetime] = None) -> PositionLimit:
        cap = int(max_positions if max_positions is not None else self.default_max_positions)
        if cap < 0:
            raise ValueError(f"max_positions must be >= 0 (got {cap})")
        now = now or _now()
        with self.hold(key):
            lim = self.store.load_position_limit(key)
            if lim is None:
                lim = PositionLimit(key=key, max_positions=cap, updated_at=now)
                self.store.save_position_limit(lim)
            elif (lim.target_max_positions if lim.target_max_positions is not None else lim.max_positions) != cap:
                self._set_cap(lim, cap)
                lim.updated_at = now
                self.store.save_position_limit(lim)
            return lim

    @staticmethod
    def _set_cap(lim: PositionLimit, cap: int) -> None:
        """Apply a new cap; below the open count it is parked until enough positions close."""
        if lim.current_positions > cap:
            if lim.target_max_positions != cap:
                log.warning("ledger %s holds %d positions above new max %d; lowered as they close",
                            lim.key, lim.current_positions, cap)
            lim.max_positions = lim.current_positions
            lim.target_max_positions = cap
        else:
            lim.max_positions = cap
            lim.target_max_positions = None

    def on_open(self, key: LimitKey, now: Optional[datetime] = None, cooldown_seconds: float = 0) -> bool:
        now = now or _now()
        with self.hold(key):
            lim = self.store.load_position_limit(key)
            if not self._has_room(lim, now):
                return False
            lim.current_positions += 1
            lim.last_position_opened_at = now
            if cooldown_seconds and cooldown_seconds > 0:
                lim.cooldown_until = now + timedelta(seconds=cooldown_seconds)
            lim.updated_at = now
            self.store.save_position_limit(lim)
            return True

    def on_close(self, key: LimitKey, now: Optional[datetime] = None, cooldown_seconds: float = 0) -> PositionLimit:
        now = now or _now()
        with self.hold(key):
            lim = self.store.load_position_limit(key)
            if lim is None:
                lim = PositionLimit(key=key, max_positions=self.default_max_positions)
            if lim.current_positions <= 0:
                err = ConcurrencyViolation(f"close on {key} with no open positions counted", key=key)
                log.warning("%s; clamped to 0 and flagged for audit", err)
                lim.current_positions = 0
                lim.audit_flagged = True
            else:
                lim.current_positions -= 1
            if lim.target_max_positions is not None:
                self._set_cap(lim, lim.target_max_positions)
            if cooldown_seconds and cooldown_seconds > 0:
                lim.cooldown_until = now + timedelta(seconds=cooldown_seconds)
            lim.updated_at = now
            self.store.save_position_limit(lim)
            return lim

    def reconcile(self, open_counts: Mapping[LimitKey, int], now: Optional[datetime] = None) -> int:
        """Set every ledger's counter to the number of open positions actually found.

        Returns how many ledgers drifted; drifted ones are flagged for audit.
        """
        now = now or _now()
        keys = {lim.key for lim in self.store.list_position_limits()} | set(open_counts)
        drifted = 0
        for key in keys:
            actual = int(open_counts.get(key, 0))
            with self.hold(key):
                lim = self.store.load_position_limit(key)
                if lim is None:
                    lim = PositionLimit(key=key, max_positions=max(self.default_max_positions, actual))
                if lim.current_positions == actual:
                    continue
                log.warning("ledger %s counted %d, found %d open; reconciled", key, lim.current_positions, actual)
                lim.current_positions = actual
                self._set_cap(lim, lim.target_max_positions if lim.target_max_positions is not None
                              else lim.max_positions)
                lim.audit_flagged = True
                lim.updated_at = now
                self.store.save_position_limit(lim)
                drifted += 1
        return drifted
