# backtest/engine.py
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional
import math
import numpy as np
import pandas as pd

from models.combination import ParameterCombination
from models.position import TAKEPROFIT, STOPLOSS, TRAILING_STOP, TIMEOUT
from models.signal import Signal, LONG, SHORT
from strategies.signals import IndicatorConfig, signal_fn_for
from utils.logger import get_logger

log = get_logger(__name__)

SignalFn = Callable[..., Signal]


@dataclass
class SimulationSettings:
    lookback_bars: int = 20
    horizon_bars: int = 50
    min_signal_strength: float = 0.5
    initial_balance: float = 10_000.0
    position_cost: float = 0.1      # fraction of balance committed per trade


@dataclass
class SimulatedTrade:
    direction: str
    entry_time: Optional[pd.Timestamp]
    exit_time: Optional[pd.Timestamp]
    entry_price: float
    exit_price: float
    pnl_pct: float                  # fraction, 0.05 = +5 %
    pnl: float                      # currency, scaled by position sizing
    exit_reason: str
    bars_held: int
    entry_index: int
    exit_index: int

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    def to_dict(self) -> dict:
        return asdict(self)


# ---------- Helpers ----------

def _column(frame: pd.DataFrame, name: str, fallback: np.ndarray) -> np.ndarray:
    if name in frame.columns:
        return frame[name].to_numpy(dtype="float64")
    return fallback


def _bar_time(index: pd.Index, i: int) -> Optional[pd.Timestamp]:
    if isinstance(index, pd.DatetimeIndex):
        return index[i]
    return None


def exit_levels(entry: float, direction: str, combination: ParameterCombination) -> tuple[float, float]:
    """(take-profit price, stop-loss price) for a trade; factors are percents."""
    tp = combination.take_profit_factor / 100.0
    sl = combination.stop_loss_ratio / 100.0
    if direction == LONG:
        return entry * (1 + tp), entry * (1 - sl)
    return entry * (1 - tp), entry * (1 + sl)


def _trade_pnl_pct(direction: str, entry: float, exit_: float) -> float:
    if entry <= 0:
        return 0.0
    if direction == LONG:
        return (exit_ - entry) / entry
    return (entry - exit_) / entry


def _scan_exit(
    direction: str,
    entry: float,
    start: int,
    end: int,
    highs: np.ndarray,
    lows: np.ndarray,
    closes: np.ndarray,
    combination: ParameterCombination,
) -> tuple[int, float, str]:
    """Walk bars start..end-1; returns (exit index, exit price, reason)."""
    tp_px, sl_px = exit_levels(entry, direction, combination)
    trailing = combination.trailing_enabled and combination.trail_start is not None and combination.trail_stop is not None
    armed = False
    best = entry
    is_long = direction == LONG

    for j in range(start, end):
        h, l = highs[j], lows[j]

        # 1) take-profit
        if is_long and h >= tp_px:
            return j, tp_px, TAKEPROFIT
        if not is_long and l <= tp_px:
            return j, tp_px, TAKEPROFIT

        # 2) trailing stop, armed on an earlier bar
        if armed:
            if is_long:
                trail_px = best * (1 - combination.trail_stop / 100.0)
                if l <= trail_px:
                    return j, trail_px, TRAILING_STOP
            else:
                trail_px = best * (1 + combination.trail_stop / 100.0)
                if h >= trail_px:
                    return j, trail_px, TRAILING_STOP

        # 3) stop-loss
        if is_long and l <= sl_px:
            return j, sl_px, STOPLOSS
        if not is_long and h >= sl_px:
            return j, sl_px, STOPLOSS

        # 4) best price / arm
        if trailing:
            best = max(best, h) if is_long else min(best, l)
            excursion = (best - entry) / entry * 100.0 if is_long else (entry - best) / entry * 100.0
            if excursion >= combination.trail_start:
                armed = True

    last = end - 1
    return last, float(closes[last]), TIMEOUT


# ---------- Simulator ----------

def simulate_trades(
    combination: ParameterCombination,
    frame: pd.DataFrame,
    signal_fn: SignalFn,
    settings: Optional[SimulationSettings] = None,
) -> List[SimulatedTrade]:
    """Replay `frame` bar by bar and return the non-overlapping trades the combination takes.

    The signal at bar i sees bars 0..i only; the trade fills at bar i+1's Open
    (Close when there is no Open column) and is scanned forward for at most
    `horizon_bars` bars. Too little history yields no trades.
    """
    s = settings or SimulationSettings()
    if frame is None or frame.empty or "Close" not in frame.columns:
        return []
    n = len(frame)
    if n < s.lookback_bars + 2:
        return []

    closes = frame["Close"].to_numpy(dtype="float64")
    highs = _column(frame, "High", closes)
    lows = _column(frame, "Low", closes)
    opens = _column(frame, "Open", closes)
    has_hl = "High" in frame.columns and "Low" in frame.columns

    trades: List[SimulatedTrade] = []
    balance = float(s.initial_balance)
    i = s.lookback_bars - 1
    while i < n - 1:
        if has_hl:
            sig = signal_fn(closes[: i + 1], highs[: i + 1], lows[: i + 1])
        else:
            sig = signal_fn(closes[: i + 1])
        if sig.is_neutral or sig.strength < s.min_signal_strength:
            i += 1
            continue

        entry_idx = i + 1
        entry = float(opens[entry_idx])
        if not math.isfinite(entry) or entry <= 0:
            i += 1
            continue
        end = min(entry_idx + s.horizon_bars, n)
        exit_idx, exit_px, reason = _scan_exit(sig.direction, entry, entry_idx, end, highs, lows, closes, combination)

        pnl_pct = _trade_pnl_pct(sig.direction, entry, exit_px)
        pnl = pnl_pct * balance * s.position_cost
        balance += pnl
        trades.append(SimulatedTrade(
            direction=sig.direction,
            entry_time=_bar_time(frame.index, entry_idx),
            exit_time=_bar_time(frame.index, exit_idx),
            entry_price=entry,
            exit_price=float(exit_px),
            pnl_pct=float(pnl_pct),
            pnl=float(pnl),
            exit_reason=reason,
            bars_held=exit_idx - entry_idx + 1,
            entry_index=entry_idx,
            exit_index=exit_idx,
        ))
        # no overlap: next signal is read after the exit bar
        i = exit_idx + 1

    return trades


def simulate_combination(
    indicator_type: str,
    combination: ParameterCombination,
    frame: pd.DataFrame,
    settings: Optional[SimulationSettings] = None,
) -> List[SimulatedTrade]:
    cfg = IndicatorConfig(type=indicator_type, params=combination.params)
    return simulate_trades(combination, frame, signal_fn_for(cfg), settings)


def trades_frame(trades: List[SimulatedTrade]) -> pd.DataFrame:
    if not trades:
        return pd.DataFrame(columns=[
            "direction", "entry_time", "exit_time", "entry_price", "exit_price",
            "pnl_pct", "pnl", "exit_reason", "bars_held", "entry_index", "exit_index",
        ])
    return pd.DataFrame([t.to_dict() for t in trades])
