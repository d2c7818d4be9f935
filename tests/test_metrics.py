import os
import sys
from datetime import datetime, timezone

import pandas as pd
import pytest

# Ensure project root is on sys.path for module resolution
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from backtest.engine import SimulatedTrade
from backtest import metrics as m
from models.combination import ParameterCombination

T0 = pd.Timestamp("2024-05-01 00:00")


def _trade(pnl, entry_h=0.0, exit_h=1.0):
    return SimulatedTrade(
        direction="long",
        entry_time=T0 + pd.Timedelta(hours=entry_h),
        exit_time=T0 + pd.Timedelta(hours=exit_h),
        entry_price=100.0, exit_price=100.0,
        pnl_pct=pnl / 1000.0, pnl=float(pnl),
        exit_reason="timeout", bars_held=1, entry_index=0, exit_index=1,
    )


def test_profit_factor_and_sentinels():
    assert m.profit_factor([_trade(150), _trade(-50)]) == pytest.approx(3.0)
    assert m.profit_factor([_trade(10)]) == m.PF_NO_LOSS_SENTINEL
    assert m.profit_factor([_trade(-10)]) == 0.0
    assert m.profit_factor([]) == 0.0


def test_profit_factor_last_n_uses_tail():
    trades = [_trade(-100)] * 10 + [_trade(30), _trade(-10)]
    assert m.profit_factor_last_n(trades, 2) == pytest.approx(3.0)
    assert m.profit_factor_last_n(trades, 0) == 0.0


def test_win_rate():
    assert m.win_rate([_trade(1), _trade(-1), _trade(0), _trade(2)]) == pytest.approx(0.5)
    assert m.win_rate([]) == 0.0


def test_max_drawdown_percent_of_peak():
    trades = [_trade(100), _trade(-220), _trade(50)]
    # equity 1000 -> 1100 -> 880 -> 930; worst fall 220 / 1100
    assert m.max_drawdown(trades, 1000) == pytest.approx(20.0)
    assert m.max_drawdown([_trade(10), _trade(10)], 1000) == 0.0
    # losing from the start counts against the initial balance
    assert m.max_drawdown([_trade(-100)], 1000) == pytest.approx(10.0)


def test_drawdown_time_until_recovery_or_end():
    trades = [_trade(100, 0, 1), _trade(-220, 1, 3), _trade(50, 3, 5)]
    # peak at hour 1, still underwater at the last exit (hour 5)
    assert m.drawdown_time_hours(trades, 1000) == pytest.approx(4.0)
    recovered = trades + [_trade(300, 5, 6)]
    assert m.drawdown_time_hours(recovered, 1000) == pytest.approx(5.0)
    assert m.drawdown_time_hours([_trade(5, 0, 2)], 1000) == 0.0


def test_positions_per_24h():
    two = [_trade(1, 0, 4), _trade(1, 6, 12)]
    assert m.positions_per_24h(two) == pytest.approx(4.0)
    # elapsed floored at one hour
    assert m.positions_per_24h([_trade(1, 0, 0.5)]) == pytest.approx(24.0)
    assert m.positions_per_24h([]) == 0.0


def test_sharpe_ratio():
    assert m.sharpe_ratio([_trade(200), _trade(0)], 10_000) == pytest.approx(1.0)
    assert m.sharpe_ratio([_trade(200)], 10_000) == 0.0
    assert m.sharpe_ratio([_trade(5), _trade(5)], 10_000) == 0.0


def test_score_trades():
    assert m.score_trades([]) == m.TradeMetrics()
    trades = [_trade(100, 0, 1), _trade(-50, 2, 3), _trade(150, 4, 6)]
    s = m.score_trades(trades, 10_000)
    assert s.total_trades == 3
    assert s.winning_trades == 2 and s.losing_trades == 1
    assert s.avg_profit == pytest.approx(125.0)
    assert s.avg_loss == pytest.approx(50.0)
    assert s.profit_factor == pytest.approx(5.0)
    assert s.profit_factor_last_25 == pytest.approx(5.0)
    assert s.win_rate == pytest.approx(2 / 3)


def test_validate_lists_every_failing_check():
    ok, reason = m.validate(m.TradeMetrics(profit_factor=1.0, total_trades=5), 1.2, 10)
    assert not ok
    assert reason == (
        "profit factor 1.00 < 1.20; trades 5 < 10; "
        "no recent profit (last 25 / last 50 profit factor are 0)"
    )

    good = m.TradeMetrics(profit_factor=1.5, total_trades=12, profit_factor_last_50=1.1)
    assert m.validate(good, 1.2, 10) == (True, "Valid")

    stale = m.TradeMetrics(profit_factor=1.5, total_trades=12)
    ok, reason = m.validate(stale, 1.2, 10)
    assert not ok and reason.startswith("no recent profit")


def test_build_result_carries_metrics_and_verdict():
    combo = ParameterCombination.create({"period": 14}, 4, 2)
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    metrics = m.TradeMetrics(profit_factor=1.8, total_trades=20, profit_factor_last_25=1.4)
    r = m.build_result("cs1", "BTCUSDT", "rsi", combo, metrics, 1.2, 10, now=now)
    assert r.is_valid
    assert r.validation_reason == "Valid"
    assert r.profit_factor == 1.8
    assert r.last_validated_at == now
    assert r.natural_key == ("cs1", "BTCUSDT", combo.combination_hash)
    assert r.recently_profitable
