"""
utils.indicators
----------------
Pure indicator math over ordered price sequences (oldest first).

Every function accepts lists, tuples, numpy arrays or pandas Series, never
mutates its input and never raises on short input: it degrades to a neutral
default instead (RSI 50, MACD zeros, last-price bands, ...).
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np


def _as_array(values) -> np.ndarray:
    if values is None:
        return np.empty(0, dtype="float64")
    arr = np.asarray(values, dtype="float64").ravel()
    return arr


def _finite(x: float, default: float = 0.0) -> float:
    x = float(x)
    return x if math.isfinite(x) else default


# ---------- moving averages ----------
def sma(prices: Sequence[float], period: int) -> float:
    """Simple moving average of the trailing `period` values.

    Returns 0.0 for empty input and the last price when fewer than `period`
    values are available.
    """
    p = _as_array(prices)
    if p.size == 0:
        return 0.0
    if period <= 0 or p.size < period:
        return _finite(p[-1])
    return _finite(p[-period:].mean())


def ema_series(prices: Sequence[float], period: int) -> np.ndarray:
    """EMA values aligned with `prices`; NaN until the SMA seed is available."""
    p = _as_array(prices)
    out = np.full(p.size, np.nan)
    if period <= 0 or p.size < period:
        return out
    k = 2.0 / (period + 1.0)
    val = float(p[:period].mean())
    out[period - 1] = val
    for i in range(period, p.size):
        val = (p[i] - val) * k + val
        out[i] = val
    return out


def ema(prices: Sequence[float], period: int) -> float:
    """Exponential moving average seeded with the SMA of the first `period` values."""
    p = _as_array(prices)
    if p.size == 0:
        return 0.0
    if period <= 0 or p.size < period:
        return _finite(p[-1])
    return _finite(ema_series(p, period)[-1])


# ---------- oscillators ----------
def rsi(prices: Sequence[float], period: int = 14) -> float:
    """RSI from simple average gain/loss over the trailing `period` changes.

    Neutral 50 when there are fewer than `period + 1` prices. A window without
    losses returns 100 if there were gains, otherwise 50.
    """
    p = _as_array(prices)
    if period <= 0 or p.size < period + 1:
        return 50.0
    changes = np.diff(p)[-period:]
    avg_gain = float(np.clip(changes, 0.0, None).sum()) / period
    avg_loss = float(-np.clip(changes, None, 0.0).sum()) / period
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return _finite(100.0 - 100.0 / (1.0 + rs), 50.0)


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26, signal: int = 9) -> dict:
    """MACD line, signal line and histogram.

    The signal line is an EMA of the MACD line over `signal` periods. When the
    MACD history is shorter than `signal` the EMA helper falls back to the
    latest MACD value. Zeros when there are fewer than `slow` prices.
    """
    p = _as_array(prices)
    zeros = {"macd": 0.0, "signal": 0.0, "histogram": 0.0}
    if slow <= 0 or fast <= 0 or p.size < slow:
        return zeros
    fast_line = ema_series(p, fast)
    slow_line = ema_series(p, slow)
    line = (fast_line - slow_line)[slow - 1:]
    line = line[np.isfinite(line)]
    if line.size == 0:
        return zeros
    m = float(line[-1])
    s = ema(line, signal)
    return {"macd": _finite(m), "signal": _finite(s), "histogram": _finite(m - s)}


def bollinger_bands(prices: Sequence[float], period: int = 20, std_dev: float = 2.0) -> dict:
    """SMA +/- std_dev * population sigma over the trailing window, plus bandwidth %."""
    p = _as_array(prices)
    if period <= 0 or p.size < period:
        last = _finite(p[-1]) if p.size else 0.0
        return {"upper": last, "middle": last, "lower": last, "bandwidth": 0.0}
    window = p[-period:]
    mid = float(window.mean())
    sigma = float(window.std(ddof=0))
    upper = mid + std_dev * sigma
    lower = mid - std_dev * sigma
    bandwidth = ((upper - lower) / mid) * 100.0 if mid > 0 else 0.0
    mid_f = _finite(mid)
    return {
        "upper": _finite(upper, mid_f),
        "middle": mid_f,
        "lower": _finite(lower, mid_f),
        "bandwidth": _finite(bandwidth),
    }


def stochastic(highs, lows, closes, period: int = 14, d_period: int = 3) -> dict:
    """Fast stochastic %K over `period` bars and %D as the mean of the last `d_period` %K values."""
    h, l, c = _as_array(highs), _as_array(lows), _as_array(closes)
    n = min(h.size, l.size, c.size)
    if period <= 0 or n < period or c.size == 0:
        return {"k": 50.0, "d": 50.0}
    h, l, c = h[-n:], l[-n:], c[-n:]

    def _k_at(end: int) -> float:
        hh = float(h[end - period:end].max())
        ll = float(l[end - period:end].min())
        rng = hh - ll
        if rng <= 0:
            return 50.0
        return (float(c[end - 1]) - ll) / rng * 100.0

    ks = [_k_at(end) for end in range(max(period, n - max(d_period, 1) + 1), n + 1)]
    k = ks[-1]
    d = float(np.mean(ks)) if ks else k
    return {"k": _finite(k, 50.0), "d": _finite(d, 50.0)}


# ---------- trend ----------
def parabolic_sar(highs, lows, acceleration: float = 0.02, maximum: float = 0.2) -> dict:
    """Wilder's Parabolic SAR walked over the whole series.

    Returns the SAR for the latest bar and the prevailing trend ("up"/"down").
    Fewer than two bars yields the last low (or 0) in an up trend.
    """
    h, l = _as_array(highs), _as_array(lows)
    n = min(h.size, l.size)
    if n < 2:
        return {"sar": _finite(l[-1]) if l.size else 0.0, "trend": "up"}
    h, l = h[-n:], l[-n:]

    up = h[1] >= h[0]
    af = acceleration
    ep = h[0] if up else l[0]
    sar = l[0] if up else h[0]
    for i in range(1, n):
        sar = sar + af * (ep - sar)
        if up:
            # SAR may not sit above the prior two lows
            sar = min(sar, l[i - 1], l[i - 2] if i >= 2 else l[i - 1])
            if l[i] < sar:
                up = False
                sar = ep
                ep = l[i]
                af = acceleration
            elif h[i] > ep:
                ep = h[i]
                af = min(af + acceleration, maximum)
        else:
            sar = max(sar, h[i - 1], h[i - 2] if i >= 2 else h[i - 1])
            if h[i] > sar:
                up = True
                sar = ep
                ep = h[i]
                af = acceleration
            elif l[i] < ep:
                ep = l[i]
                af = min(af + acceleration, maximum)
    return {"sar": _finite(sar, float(l[-1])), "trend": "up" if up else "down"}


def adx(highs, lows, closes, period: int = 14) -> dict:
    """Average Directional Index from trailing-window sums of TR and +/-DM.

    DI values use the last `period` bars; ADX is the mean of the last `period`
    DX values that can be formed (the current DX when history is short).
    """
    h, l, c = _as_array(highs), _as_array(lows), _as_array(closes)
    n = min(h.size, l.size, c.size)
    weak = {"adx": 0.0, "plus_di": 0.0, "minus_di": 0.0, "trend": "weak"}
    if period <= 0 or n < period + 1:
        return weak
    h, l, c = h[-n:], l[-n:], c[-n:]

    tr = np.maximum.reduce([h[1:] - l[1:], np.abs(h[1:] - c[:-1]), np.abs(l[1:] - c[:-1])])
    up_move = h[1:] - h[:-1]
    down_move = l[:-1] - l[1:]
    plus_dm = np.where((up_move > down_move) & (up_move > 0), up_move, 0.0)
    minus_dm = np.where((down_move > up_move) & (down_move > 0), down_move, 0.0)

    def _di_at(end: int) -> tuple[float, float, float]:
        tr_sum = float(tr[end - period:end].sum())
        if tr_sum <= 0:
            return 0.0, 0.0, 0.0
        pdi = float(plus_dm[end - period:end].sum()) / tr_sum * 100.0
        mdi = float(minus_dm[end - period:end].sum()) / tr_sum * 100.0
        total = pdi + mdi
        dx = abs(pdi - mdi) / total * 100.0 if total > 0 else 0.0
        return pdi, mdi, dx

    ends = range(max(period, tr.size - period + 1), tr.size + 1)
    dxs = []
    pdi = mdi = 0.0
    for end in ends:
        pdi, mdi, dx = _di_at(end)
        dxs.append(dx)
    value = float(np.mean(dxs)) if dxs else 0.0
    return {
        "adx": _finite(value),
        "plus_di": _finite(pdi),
        "minus_di": _finite(mdi),
        "trend": "strong" if value > 25 else "weak",
    }
