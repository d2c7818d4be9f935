# strategies/signals.py
"""
Map raw indicator readings to directional signals.

generate_signal() turns one indicator family + params into a Signal with a
strength in [0, 1]; combine_signals() merges several of them. Thresholds are
fixed per family (RSI oversold/overbought, Bollinger %B 0.2/0.8, ...).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence

import numpy as np
import pandas as pd

from models.signal import Signal, LONG, SHORT, NEUTRAL
from utils import indicators as ind

INDICATOR_TYPES = ("rsi", "macd", "bollinger", "sar", "ema", "sma", "stochastic", "adx")

# Used when only closes are available (same approximation the live path uses)
_HL_SPREAD = 0.01


@dataclass(frozen=True)
class IndicatorConfig:
    type: str
    params: Mapping[str, float] = field(default_factory=dict)

    def get(self, key: str, default: float) -> float:
        v = self.params.get(key)
        # 0 / None fall back to the family default
        return default if not v else v


def _clip01(x: float) -> float:
    if not np.isfinite(x):
        return 0.0
    return float(min(max(x, 0.0), 1.0))


def _neutral(kind: str, value: float = 0.0) -> Signal:
    return Signal(type=kind, direction=NEUTRAL, strength=0.0, value=float(value) if np.isfinite(value) else 0.0)


def _approx_hl(prices: np.ndarray, highs, lows) -> tuple[np.ndarray, np.ndarray]:
    h = np.asarray(highs, dtype="float64") if highs is not None else prices * (1 + _HL_SPREAD)
    l = np.asarray(lows, dtype="float64") if lows is not None else prices * (1 - _HL_SPREAD)
    return h, l


# ---------- per-family rules ----------
def _rsi_signal(cfg: IndicatorConfig, p: np.ndarray) -> Signal:
    value = ind.rsi(p, int(cfg.get("period", 14)))
    oversold = float(cfg.get("oversold", 30))
    overbought = float(cfg.get("overbought", 70))
    if value < oversold:
        return Signal("rsi", LONG, _clip01((oversold - value) / oversold), value)
    if value > overbought:
        return Signal("rsi", SHORT, _clip01((value - overbought) / (100 - overbought)), value)
    return _neutral("rsi", value)


def _macd_signal(cfg: IndicatorConfig, p: np.ndarray) -> Signal:
    m = ind.macd(p, int(cfg.get("fast", 12)), int(cfg.get("slow", 26)), int(cfg.get("signal", 9)))
    hist = m["histogram"]
    price = float(p[-1])
    strength = _clip01(abs(hist) / price) if price > 0 else 0.0
    if hist > 0:
        return Signal("macd", LONG, strength, hist)
    if hist < 0:
        return Signal("macd", SHORT, strength, hist)
    return _neutral("macd", hist)


def _bollinger_signal(cfg: IndicatorConfig, p: np.ndarray) -> Signal:
    bb = ind.bollinger_bands(p, int(cfg.get("period", 20)), float(cfg.get("stdDev", cfg.get("std_dev", 2))))
    width = bb["upper"] - bb["lower"]
    if width <= 0:
        return _neutral("bollinger", 0.5)
    pos = (float(p[-1]) - bb["lower"]) / width
    if pos < 0.2:
        return Signal("bollinger", LONG, _clip01(1 - pos / 0.2), pos)
    if pos > 0.8:
        return Signal("bollinger", SHORT, _clip01((pos - 0.8) / 0.2), pos)
    return _neutral("bollinger", pos)


def _sar_signal(cfg: IndicatorConfig, p: np.ndarray, highs, lows) -> Signal:
    h, l = _approx_hl(p, highs, lows)
    s = ind.parabolic_sar(h, l, float(cfg.get("acceleration", 0.02)), float(cfg.get("maximum", 0.2)))
    price = float(p[-1])
    strength = _clip01(abs(price - s["sar"]) / price * 10) if price > 0 else 0.0
    return Signal("sar", LONG if s["trend"] == "up" else SHORT, strength, s["sar"])


def _adx_signal(cfg: IndicatorConfig, p: np.ndarray, highs, lows) -> Signal:
    h, l = _approx_hl(p, highs, lows)
    a = ind.adx(h, l, p, int(cfg.get("period", 14)))
    strength = _clip01(a["adx"] / 50.0)
    if a["plus_di"] > a["minus_di"]:
        return Signal("adx", LONG, strength, a["adx"])
    if a["minus_di"] > a["plus_di"]:
        return Signal("adx", SHORT, strength, a["adx"])
    return _neutral("adx", a["adx"])


def _ma_signal(kind: str, cfg: IndicatorConfig, p: np.ndarray) -> Signal:
    period = int(cfg.get("period", 20))
    if p.size < period:
        return _neutral(kind, float(p[-1]))
    avg = ind.ema(p, period) if kind == "ema" else ind.sma(p, period)
    if avg <= 0:
        return _neutral(kind, avg)
    dist = (float(p[-1]) - avg) / avg
    if dist > 0:
        return Signal(kind, LONG, _clip01(dist * 10), avg)
    if dist < 0:
        return Signal(kind, SHORT, _clip01(-dist * 10), avg)
    return _neutral(kind, avg)


def _stochastic_signal(cfg: IndicatorConfig, p: np.ndarray, highs, lows) -> Signal:
    h, l = _approx_hl(p, highs, lows)
    st = ind.stochastic(h, l, p, int(cfg.get("period", 14)), int(cfg.get("d_period", 3)))
    k = st["k"]
    oversold = float(cfg.get("oversold", 20))
    overbought = float(cfg.get("overbought", 80))
    if k < oversold:
        return Signal("stochastic", LONG, _clip01((oversold - k) / oversold), k)
    if k > overbought:
        return Signal("stochastic", SHORT, _clip01((k - overbought) / (100 - overbought)), k)
    return _neutral("stochastic", k)


def generate_signal(config: IndicatorConfig, prices: Sequence[float], highs=None, lows=None) -> Signal:
    """Directional signal for the latest bar of `prices` (closes, oldest first)."""
    p = np.asarray(prices if prices is not None else [], dtype="float64").ravel()
    kind = (config.type or "").lower()
    if p.size == 0 or not np.isfinite(p[-1]):
        return _neutral(kind)

    if kind == "rsi":
        return _rsi_signal(config, p)
    if kind == "macd":
        return _macd_signal(config, p)
    if kind == "bollinger":
        return _bollinger_signal(config, p)
    if kind == "sar":
        return _sar_signal(config, p, highs, lows)
    if kind == "adx":
        return _adx_signal(config, p, highs, lows)
    if kind in ("ema", "sma"):
        return _ma_signal(kind, config, p)
    if kind == "stochastic":
        return _stochastic_signal(config, p, highs, lows)
    return _neutral(kind)


def combine_signals(signals: Sequence[Signal]) -> Signal:
    """Average per-direction strength over all signals; neutral unless one side dominates and > 0.3."""
    if not signals:
        return _neutral("combined")
    n = len(signals)
    long_strength = sum(s.strength for s in signals if s.direction == LONG) / n
    short_strength = sum(s.strength for s in signals if s.direction == SHORT) / n
    if long_strength > short_strength and long_strength > 0.3:
        return Signal("combined", LONG, long_strength, long_strength)
    if short_strength > long_strength and short_strength > 0.3:
        return Signal("combined", SHORT, short_strength, short_strength)
    return _neutral("combined")


def calculate_signals(prices: Sequence[float], configs: Sequence[IndicatorConfig]) -> list[Signal]:
    return [generate_signal(c, prices) for c in configs]


# ---------- frame helpers ----------
def signal_at(config: IndicatorConfig, frame: pd.DataFrame, i: int) -> Signal:
    """Signal for bar `i` computed from bars 0..i only."""
    prefix = frame.iloc[: i + 1]
    return frame_signal(config, prefix)


def frame_signal(config: IndicatorConfig, frame: pd.DataFrame) -> Signal:
    closes = frame["Close"].to_numpy(dtype="float64")
    highs = frame["High"].to_numpy(dtype="float64") if "High" in frame.columns else None
    lows = frame["Low"].to_numpy(dtype="float64") if "Low" in frame.columns else None
    return generate_signal(config, closes, highs, lows)


def signal_fn_for(config: IndicatorConfig) -> Callable[..., Signal]:
    """Signal function over prefix arrays (closes, highs, lows), as consumed by backtest.engine."""
    def _fn(closes: np.ndarray, highs: np.ndarray | None = None, lows: np.ndarray | None = None) -> Signal:
        return generate_signal(config, closes, highs, lows)
    return _fn
