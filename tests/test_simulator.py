import os
import sys

import numpy as np
import pandas as pd
import pytest

# Ensure project root is on sys.path for module resolution
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from backtest.engine import SimulationSettings, simulate_trades, simulate_combination, trades_frame
from models.combination import ParameterCombination
from models.signal import Signal, LONG, SHORT, NEUTRAL


def _flat(n=60, price=100.0):
    idx = pd.date_range("2024-03-01", periods=n, freq="h")
    return pd.DataFrame({
        "Open": np.full(n, price), "High": np.full(n, price),
        "Low": np.full(n, price), "Close": np.full(n, price),
    }, index=idx)


def _set_bar(df, i, o=None, h=None, l=None, c=None):
    for col, v in (("Open", o), ("High", h), ("Low", l), ("Close", c)):
        if v is not None:
            df.iloc[i, df.columns.get_loc(col)] = v


def fire_once(direction=LONG, at=20, strength=1.0):
    """Signals exactly once, on the bar where `at` closes are visible."""
    def fn(closes, *rest):
        if len(closes) == at:
            return Signal("test", direction, strength)
        return Signal("test")
    return fn


def always(direction=LONG, strength=1.0):
    def fn(closes, *rest):
        return Signal("test", direction, strength)
    return fn


def _combo(tp=5, sl=2, trailing=False, start=None, stop=None):
    return ParameterCombination.create({"period": 14}, tp, sl, trailing, start, stop)


def test_long_take_profit_has_priority_over_stop_loss_on_same_bar():
    df = _flat()
    _set_bar(df, 20, h=106, l=97)
    trades = simulate_trades(_combo(5, 2), df, fire_once())
    assert len(trades) == 1
    t = trades[0]
    assert t.exit_reason == "takeprofit"
    assert t.entry_index == 20 and t.exit_index == 20
    assert t.exit_price == pytest.approx(105.0)
    assert t.pnl_pct == pytest.approx(0.05)
    # 5 % of 10 000 at 10 % position cost
    assert t.pnl == pytest.approx(50.0)
    assert t.entry_time == df.index[20]


def test_rising_market_reaches_take_profit():
    df = _flat()
    for k, i in enumerate(range(20, 60)):
        o = 100.0 + k
        _set_bar(df, i, o=o, h=o + 1.5, l=o, c=o + 1)
    trades = simulate_trades(_combo(5, 2), df, fire_once())
    t = trades[0]
    # entry at 100, the first High >= 105 is bar 24 (Open 104, High 105.5)
    assert t.exit_reason == "takeprofit"
    assert t.exit_index == 24
    assert t.bars_held == 5
    assert t.pnl == pytest.approx(50.0)


def _rise_then_pullback(rise_bars=20, fall_bars=7, rise=0.03, fall=0.01):
    """Closes climb `rise` in total, then drop `fall` per bar; every bar opens at the prior close."""
    closes = [100.0 * (1 + rise * k / (rise_bars - 1)) for k in range(rise_bars)]
    for _ in range(fall_bars):
        closes.append(closes[-1] * (1 - fall))
    opens = [closes[0]] + closes[:-1]
    idx = pd.date_range("2024-03-01", periods=len(closes), freq="h")
    return pd.DataFrame({
        "Open": opens,
        "High": np.maximum(opens, closes),
        "Low": np.minimum(opens, closes),
        "Close": closes,
    }, index=idx)


def test_rsi_on_rise_then_pullback_exits_once_at_take_profit():
    df = _rise_then_pullback()
    trades = simulate_combination("rsi", _combo(5, 2), df, SimulationSettings(lookback_bars=20))
    assert len(trades) == 1
    t = trades[0]
    # a one-way climb reads as overbought: short at the top, covered 5 % lower
    assert t.direction == SHORT
    assert t.entry_index == 20
    assert t.entry_price == pytest.approx(103.0)
    assert t.exit_reason == "takeprofit"
    assert t.exit_index == 25
    assert t.exit_price == pytest.approx(103.0 * 0.95)
    assert all(tr.exit_reason != "stoploss" for tr in trades)


def test_long_stop_loss():
    df = _flat()
    _set_bar(df, 20, h=101, l=97)
    t = simulate_trades(_combo(5, 2), df, fire_once())[0]
    assert t.exit_reason == "stoploss"
    assert t.exit_price == pytest.approx(98.0)
    assert t.pnl == pytest.approx(-20.0)
    assert not t.is_win


def test_short_take_profit():
    df = _flat()
    _set_bar(df, 20, h=100, l=94)
    t = simulate_trades(_combo(5, 2), df, fire_once(SHORT))[0]
    assert t.direction == SHORT
    assert t.exit_reason == "takeprofit"
    assert t.exit_price == pytest.approx(95.0)
    assert t.pnl > 0


def test_short_stop_loss():
    df = _flat()
    _set_bar(df, 20, h=103, l=99)
    t = simulate_trades(_combo(5, 2), df, fire_once(SHORT))[0]
    assert t.exit_reason == "stoploss"
    assert t.exit_price == pytest.approx(102.0)


def test_timeout_exits_at_last_scanned_close():
    df = _flat()
    _set_bar(df, 24, c=101)
    s = SimulationSettings(horizon_bars=5)
    t = simulate_trades(_combo(5, 2), df, fire_once(), s)[0]
    assert t.exit_reason == "timeout"
    assert t.exit_index == 24
    assert t.bars_held == 5
    assert t.exit_price == pytest.approx(101.0)


def test_trailing_stop_arms_then_exits():
    df = _flat()
    _set_bar(df, 21, h=103, l=100)
    _set_bar(df, 22, h=102, l=101)
    combo = _combo(10, 5, trailing=True, start=2, stop=1)
    t = simulate_trades(combo, df, fire_once())[0]
    assert t.exit_reason == "trailing_stop"
    assert t.exit_index == 22
    assert t.exit_price == pytest.approx(103 * 0.99)


def test_trailing_does_not_fire_on_the_arming_bar():
    df = _flat()
    # arms (+3 %) and retraces below the trail on the same bar
    _set_bar(df, 21, h=103, l=101)
    combo = _combo(10, 5, trailing=True, start=2, stop=1)
    s = SimulationSettings(horizon_bars=3)
    t = simulate_trades(combo, df, fire_once(), s)[0]
    assert t.exit_reason == "trailing_stop"
    assert t.exit_index == 22


def test_trades_do_not_overlap():
    df = _flat(80)
    trades = simulate_trades(_combo(5, 2), df, always(), SimulationSettings(horizon_bars=5))
    assert len(trades) > 3
    for prev, nxt in zip(trades, trades[1:]):
        assert nxt.entry_index > prev.exit_index


def test_balance_compounds_between_trades():
    df = _flat()
    df["High"] = 106.0
    trades = simulate_trades(_combo(5, 2), df, always())
    assert trades[0].pnl == pytest.approx(50.0)
    assert trades[1].pnl == pytest.approx(0.05 * 10_050 * 0.1)


def test_weak_or_neutral_signals_are_skipped():
    df = _flat()
    assert simulate_trades(_combo(), df, always(strength=0.3)) == []
    assert simulate_trades(_combo(), df, always(NEUTRAL)) == []
    s = SimulationSettings(min_signal_strength=0.2)
    assert simulate_trades(_combo(), df, always(strength=0.3), s)


def test_short_or_malformed_frames_yield_nothing():
    assert simulate_trades(_combo(), _flat(21), always()) == []
    assert simulate_trades(_combo(), pd.DataFrame(), always()) == []
    assert simulate_trades(_combo(), _flat().drop(columns=["Close"]), always()) == []


def test_close_only_frame_calls_signal_with_closes():
    seen = []

    def fn(closes, *rest):
        seen.append(len(rest))
        return Signal("test")

    df = pd.DataFrame({"Close": np.full(30, 100.0)})
    assert simulate_trades(_combo(), df, fn) == []
    assert seen and set(seen) == {0}


def test_no_look_ahead():
    rng = np.random.default_rng(21)
    closes = 100 + np.cumsum(rng.normal(0, 1.5, 300))
    idx = pd.date_range("2024-01-01", periods=300, freq="h")
    df = pd.DataFrame({
        "Open": closes, "High": closes + 1, "Low": closes - 1, "Close": closes,
    }, index=idx)
    combo = ParameterCombination.create({"period": 7}, 2, 1)
    s = SimulationSettings(min_signal_strength=0.0, horizon_bars=10)
    cut = 200

    base = simulate_combination("rsi", combo, df, s)
    mutated = df.copy()
    mutated.iloc[cut:, :] = mutated.iloc[cut:, :] * 1.5
    changed = simulate_combination("rsi", combo, mutated, s)

    before = [t.to_dict() for t in base if t.exit_index < cut]
    after = [t.to_dict() for t in changed if t.exit_index < cut]
    assert before == after


def test_trades_frame_columns():
    empty = trades_frame([])
    assert empty.empty
    assert "exit_reason" in empty.columns
    df = _flat()
    _set_bar(df, 20, h=106)
    out = trades_frame(simulate_trades(_combo(), df, fire_once()))
    assert list(out["exit_reason"]) == ["takeprofit"]
