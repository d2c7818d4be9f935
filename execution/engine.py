"""
execution.engine
----------------
Pseudo-position lifecycle: open virtual positions for validated combinations
and tick every open one against live prices until an exit rule fires.

One tick:
  1) snapshot open positions + distinct symbols
  2) one batched current-price call
  3) batches of `position_batch_size`, run one after another; positions inside
     a batch are evaluated concurrently on a bounded thread pool
  4) exits close the position, release the ledger slot and drop it from memory;
     everything else gets its price / pnl / trailing anchor updated

Ticks are single-flight: a tick that starts while another runs is skipped.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from models.position import LimitKey, PseudoPosition
from models.result import CoordinationResult
from risk.limits import PositionLimitTracker
from risk.position import check_exit
from storage.base import Store
from utils.errors import DataSourceError, PersistenceError
from utils.logger import get_logger

log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TickReport:
    evaluated: int = 0
    updated: int = 0
    closed: Dict[str, int] = field(default_factory=dict)
    missing_prices: List[str] = field(default_factory=list)
    errors: int = 0
    skipped: bool = False
    price_error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def closed_total(self) -> int:
        return sum(self.closed.values())


class PseudoPositionManager:
    def __init__(
        self,
        store: Store,
        tracker: PositionLimitTracker,
        market,
        batch_size: int = 50,
        max_workers: int = 10,
        timeout_hours: Optional[float] = None,
        cooldown_after_open_seconds: float = 0.0,
        cooldown_after_close_seconds: float = 0.0,
        quantity: float = 100.0,
        leverage: float = 1.0,
    ):
        self.store = store
        self.tracker = tracker
        self.market = market
        self.batch_size = max(1, int(batch_size))
        self.max_workers = max(1, int(max_workers))
        self.timeout_hours = timeout_hours
        self.cooldown_after_open_seconds = cooldown_after_open_seconds
        self.cooldown_after_close_seconds = cooldown_after_close_seconds
        self.quantity = quantity
        self.leverage = leverage
        self._positions: Dict[str, PseudoPosition] = {}
        self._mem_lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self.skipped_ticks = 0

    # ---- memory view ----
    def open_positions(self) -> List[PseudoPosition]:
        with self._mem_lock:
            return [p.copy() for p in self._positions.values()]

    def open_count(self) -> int:
        with self._mem_lock:
            return len(self._positions)

    def load_open_positions(self) -> int:
        """Rehydrate from storage and align the ledgers with what is actually open."""
        rows = self.store.list_open_pseudo_positions()
        with self._mem_lock:
            self._positions = {p.id: p for p in rows}
        counts = Counter(p.limit_key for p in rows)
        drifted = self.tracker.reconcile(counts)
        log.info("rehydrated %d open pseudo positions (%d ledgers reconciled)", len(rows), drifted)
        return len(rows)

    # ---- open ----
    def open_position(
        self,
        result: CoordinationResult,
        direction: str,
        price: float,
        now: Optional[datetime] = None,
        cooldown_seconds: Optional[float] = None,
    ) -> Optional[PseudoPosition]:
        """Open one pseudo position if the ledger has room; None otherwise.

        Capacity check, insert and counter increment happen under the ledger's
        key lock inside one storage unit.
        """
        if direction not in ("long", "short"):
            raise ValueError(f"direction must be 'long' or 'short' (got {direction!r})")
        if price is None or price <= 0:
            return None
        now = now or _now()
        cooldown = self.cooldown_after_open_seconds if cooldown_seconds is None else cooldown_seconds
        key = LimitKey(result.configuration_set_id, result.symbol, result.combination_hash, direction)

        with self.tracker.hold(key):
            if not self.tracker.can_open(key, now):
                return None
            pos = PseudoPosition(
                id=uuid.uuid4().hex,
                configuration_set_id=result.configuration_set_id,
                symbol=result.symbol,
                direction=direction,
                indicator_type=result.indicator_type,
                combination=result.combination,
                entry_price=float(price),
                quantity=self.quantity,
                leverage=self.leverage,
                current_price=float(price),
                opened_at=now,
            )
            with self.store.atomic():
                self.store.insert_pseudo_position(pos)
                if not self.tracker.on_open(key, now, cooldown):
                    # can_open said yes under the same lock
                    raise PersistenceError(f"ledger {key} refused open", key=str(key))
            with self._mem_lock:
                self._positions[pos.id] = pos
        log.info("opened %s %s @ %.6g [%s]", result.symbol, direction, price, pos.id[:8])
        return pos.copy()

    # ---- tick ----
    def tick(self, now: Optional[datetime] = None) -> TickReport:
        if not self._tick_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            return TickReport(skipped=True)
        try:
            return self._tick(now or _now())
        finally:
            self._tick_lock.release()

    def _tick(self, now: datetime) -> TickReport:
        report = TickReport()
        positions = self.open_positions()
        if not positions:
            return report
        symbols = sorted({p.symbol for p in positions})
        try:
            prices = self.market.get_current_prices(symbols)
        except DataSourceError as e:
            log.warning("tick: price fetch failed (%s); retrying next tick", e)
            report.price_error = str(e)
            return report

        report.missing_prices = [s for s in symbols if s not in prices]
        if report.missing_prices:
            log.debug("tick: no price for %s", ", ".join(report.missing_prices))

        started = time.monotonic()
        lock = threading.Lock()
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="tick") as pool:
            for i in range(0, len(positions), self.batch_size):
                batch = positions[i: i + self.batch_size]
                futs = [pool.submit(self._evaluate, p, prices.get(p.symbol), now, report, lock) for p in batch]
                wait(futs)
        report.duration_seconds = time.monotonic() - started
        return report

    def _evaluate(self, snap: PseudoPosition, price: Optional[float], now: datetime,
                  report: TickReport, lock: threading.Lock) -> None:
        if price is None:
            return
        try:
            with lock:
                report.evaluated += 1
            upd = check_exit(snap, price, now, self.timeout_hours)
            if upd.closes:
                self._close(snap, upd, now)
                with lock:
                    report.closed[upd.exit.exit_reason] = report.closed.get(upd.exit.exit_reason, 0) + 1
                return
            fields = {
                "current_price": upd.current_price,
                "unrealized_pnl": upd.unrealized_pnl,
                "unrealized_pnl_pct": upd.unrealized_pnl_pct,
                "best_price": upd.best_price,
            }
            self.store.update_pseudo_position(snap.id, fields)
            with self._mem_lock:
                live = self._positions.get(snap.id)
                if live is not None:
                    for k, v in fields.items():
                        setattr(live, k, v)
            with lock:
                report.updated += 1
        except Exception:
            # one bad position never stops the tick
            log.exception("tick: position %s (%s) failed", snap.id[:8], snap.symbol)
            with lock:
                report.errors += 1

    def _close(self, snap: PseudoPosition, upd, now: datetime) -> None:
        key = snap.limit_key
        with self.tracker.hold(key):
            with self.store.atomic():
                self.store.close_pseudo_position(snap.id, upd.exit)
                self.tracker.on_close(key, now, self.cooldown_after_close_seconds)
            with self._mem_lock:
                self._positions.pop(snap.id, None)
        log.info("closed %s %s @ %.6g via %s (pnl %.4f)", snap.symbol, snap.direction,
                 upd.exit.exit_price, upd.exit.exit_reason, upd.exit.realized_pnl)
