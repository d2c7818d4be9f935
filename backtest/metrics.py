# backtest/metrics.py
"""
Score a list of simulated trades and decide whether the combination is valid.

All ratios are computed on currency pnl (already scaled by position sizing), so
they compound the same way the simulator's balance does.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from backtest.engine import SimulatedTrade
from models.combination import ParameterCombination
from models.result import CoordinationResult

# wins with no losses
PF_NO_LOSS_SENTINEL = 2.0


@dataclass
class TradeMetrics:
    profit_factor: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    avg_profit: float = 0.0
    avg_loss: float = 0.0
    max_drawdown: float = 0.0
    drawdown_time_hours: float = 0.0
    profit_factor_last_25: float = 0.0
    profit_factor_last_50: float = 0.0
    positions_per_24h: float = 0.0
    sharpe_ratio: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _pnls(trades: Sequence[SimulatedTrade]) -> np.ndarray:
    return np.array([t.pnl for t in trades], dtype="float64")


def profit_factor(trades: Sequence[SimulatedTrade]) -> float:
    p = _pnls(trades)
    gross_profit = float(p[p > 0].sum()) if p.size else 0.0
    gross_loss = float(-p[p < 0].sum()) if p.size else 0.0
    if gross_loss == 0:
        return PF_NO_LOSS_SENTINEL if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


def profit_factor_last_n(trades: Sequence[SimulatedTrade], n: int) -> float:
    return profit_factor(list(trades)[-n:]) if n > 0 else 0.0


def win_rate(trades: Sequence[SimulatedTrade]) -> float:
    if not trades:
        return 0.0
    return sum(1 for t in trades if t.pnl > 0) / len(trades)


def max_drawdown(trades: Sequence[SimulatedTrade], initial_balance: float) -> float:
    """Largest peak-to-trough fall of the equity curve, in percent of the peak."""
    if not trades or initial_balance <= 0:
        return 0.0
    equity = initial_balance + np.cumsum(_pnls(trades))
    equity = np.concatenate([[initial_balance], equity])
    peak = np.maximum.accumulate(equity)
    dd = np.where(peak > 0, (peak - equity) / peak, 0.0)
    return float(dd.max() * 100.0)


def _hours(a: pd.Timestamp, b: pd.Timestamp) -> float:
    return max((pd.Timestamp(b) - pd.Timestamp(a)).total_seconds() / 3600.0, 0.0)


def drawdown_time_hours(trades: Sequence[SimulatedTrade], initial_balance: float) -> float:
    """Longest underwater stretch: peak trade exit -> recovery exit (or last exit)."""
    timed = [t for t in trades if t.exit_time is not None]
    if not timed:
        return 0.0
    equity = initial_balance
    peak = initial_balance
    peak_time = timed[0].entry_time if timed[0].entry_time is not None else timed[0].exit_time
    longest = 0.0
    underwater = False
    for t in timed:
        equity += t.pnl
        if equity >= peak:
            if underwater:
                longest = max(longest, _hours(peak_time, t.exit_time))
                underwater = False
            peak = equity
            peak_time = t.exit_time
        else:
            underwater = True
    if underwater:
        longest = max(longest, _hours(peak_time, timed[-1].exit_time))
    return longest


def positions_per_24h(trades: Sequence[SimulatedTrade]) -> float:
    if not trades:
        return 0.0
    first = trades[0].entry_time
    last = trades[-1].exit_time
    if first is None or last is None:
        return 0.0
    elapsed = max(_hours(first, last), 1.0)
    return len(trades) / (elapsed / 24.0)


def sharpe_ratio(trades: Sequence[SimulatedTrade], initial_balance: float) -> float:
    if len(trades) < 2 or initial_balance <= 0:
        return 0.0
    r = _pnls(trades) / initial_balance
    std = float(r.std())
    if std == 0 or not np.isfinite(std):
        return 0.0
    return float(r.mean() / std)


def score_trades(trades: Sequence[SimulatedTrade], initial_balance: float = 10_000.0) -> TradeMetrics:
    if not trades:
        return TradeMetrics()
    p = _pnls(trades)
    wins = p[p > 0]
    losses = p[p < 0]
    return TradeMetrics(
        profit_factor=profit_factor(trades),
        win_rate=win_rate(trades),
        total_trades=len(trades),
        winning_trades=int(wins.size),
        losing_trades=int(losses.size),
        avg_profit=float(wins.mean()) if wins.size else 0.0,
        avg_loss=float(-losses.mean()) if losses.size else 0.0,
        max_drawdown=max_drawdown(trades, initial_balance),
        drawdown_time_hours=drawdown_time_hours(trades, initial_balance),
        profit_factor_last_25=profit_factor_last_n(trades, 25),
        profit_factor_last_50=profit_factor_last_n(trades, 50),
        positions_per_24h=positions_per_24h(trades),
        sharpe_ratio=sharpe_ratio(trades, initial_balance),
    )


def validate(m: TradeMetrics, min_profit_factor: float, min_trades: int) -> tuple[bool, str]:
    """Returns (is_valid, reason). The reason names every failing check, or 'Valid'."""
    reasons = []
    if m.profit_factor < min_profit_factor:
        reasons.append(f"profit factor {m.profit_factor:.2f} < {min_profit_factor:.2f}")
    if m.total_trades < min_trades:
        reasons.append(f"trades {m.total_trades} < {min_trades}")
    if not (m.profit_factor_last_25 > 0 or m.profit_factor_last_50 > 0):
        reasons.append("no recent profit (last 25 / last 50 profit factor are 0)")
    if reasons:
        return False, "; ".join(reasons)
    return True, "Valid"


def build_result(
    configuration_set_id: str,
    symbol: str,
    indicator_type: str,
    combination: ParameterCombination,
    metrics: TradeMetrics,
    min_profit_factor: float,
    min_trades: int,
    now: Optional[datetime] = None,
) -> CoordinationResult:
    ok, reason = validate(metrics, min_profit_factor, min_trades)
    return CoordinationResult(
        configuration_set_id=configuration_set_id,
        symbol=symbol,
        indicator_type=indicator_type,
        combination=combination,
        is_valid=ok,
        validation_reason=reason,
        last_validated_at=now or datetime.now(timezone.utc),
        **metrics.to_dict(),
    )
