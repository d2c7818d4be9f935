"""
risk.position
-------------
Exit levels and the live exit rule set for pseudo positions.

check_exit() is a pure function of (position, price, now); the lifecycle
manager applies whatever it returns. Rules are tried in order and the first
match wins:

    take-profit -> stop-loss -> trailing stop (armed only) -> timeout -> stay open

Factors are percents: take_profit_factor=5 closes a long at entry * 1.05.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from models.position import (
    PseudoPosition, PositionExit, TAKEPROFIT, STOPLOSS, TRAILING_STOP, TIMEOUT,
)


@dataclass(frozen=True)
class PositionUpdate:
    current_price: float
    unrealized_pnl: float
    unrealized_pnl_pct: float
    best_price: Optional[float]
    exit: Optional[PositionExit] = None

    @property
    def closes(self) -> bool:
        return self.exit is not None


def calc_levels(direction: str, entry: float, take_profit_factor: float, stop_loss_ratio: float) -> Tuple[Optional[float], Optional[float]]:
    """Return (take_profit, stop_loss) prices for a direction."""
    if entry is None or entry <= 0:
        return None, None
    tp = take_profit_factor / 100.0
    sl = stop_loss_ratio / 100.0
    if direction == "long":
        return entry * (1 + tp), entry * (1 - sl)
    if direction == "short":
        return entry * (1 - tp), entry * (1 + sl)
    return None, None


def calc_pnl(position: PseudoPosition, price: float) -> Tuple[float, float]:
    """(pnl, pnl percent) of the position at `price`, leverage applied."""
    diff = price - position.entry_price if position.is_long else position.entry_price - price
    pct = diff / position.entry_price * 100.0 if position.entry_price else 0.0
    return diff * position.quantity * position.leverage, pct * position.leverage


def _favourable_pct(position: PseudoPosition, price: float) -> float:
    if not position.entry_price:
        return 0.0
    if position.is_long:
        return (price - position.entry_price) / position.entry_price * 100.0
    return (position.entry_price - price) / position.entry_price * 100.0


def trailing_anchor(position: PseudoPosition, price: float) -> Optional[float]:
    """Updated best price; None while the trail has not armed yet."""
    combo = position.combination
    if not combo.trailing_enabled or combo.trail_start is None or combo.trail_stop is None:
        return None
    best = position.best_price
    if best is None:
        return price if _favourable_pct(position, price) >= combo.trail_start else None
    return max(best, price) if position.is_long else min(best, price)


def trailing_hit(position: PseudoPosition, best: Optional[float], price: float) -> bool:
    if best is None:
        return False
    stop = position.combination.trail_stop
    if position.is_long:
        return price <= best * (1 - stop / 100.0)
    return price >= best * (1 + stop / 100.0)


def check_exit(
    position: PseudoPosition,
    price: float,
    now: datetime,
    timeout_hours: Optional[float] = None,
) -> PositionUpdate:
    combo = position.combination
    pnl, pnl_pct = calc_pnl(position, price)
    best = trailing_anchor(position, price)

    def _close(reason: str) -> PositionUpdate:
        return PositionUpdate(price, pnl, pnl_pct, best, PositionExit(
            exit_price=price, exit_reason=reason, realized_pnl=pnl,
            realized_pnl_pct=pnl_pct, closed_at=now,
        ))

    tp_px, sl_px = calc_levels(position.direction, position.entry_price,
                               combo.take_profit_factor, combo.stop_loss_ratio)
    if tp_px is not None:
        if (position.is_long and price >= tp_px) or (not position.is_long and price <= tp_px):
            return _close(TAKEPROFIT)
        if (position.is_long and price <= sl_px) or (not position.is_long and price >= sl_px):
            return _close(STOPLOSS)

    if trailing_hit(position, best, price):
        return _close(TRAILING_STOP)

    if timeout_hours and position.opened_at is not None:
        if (now - position.opened_at).total_seconds() >= timeout_hours * 3600.0:
            return _close(TIMEOUT)

    return PositionUpdate(price, pnl, pnl_pct, best)
