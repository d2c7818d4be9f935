import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is on sys.path for module resolution
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from models.combination import ParameterCombination
from models.position import PseudoPosition
from risk.position import calc_levels, calc_pnl, check_exit, trailing_anchor

NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


def _pos(direction="long", entry=100.0, tp=5, sl=2, trailing=True, start=2, stop=1, **kw):
    combo = ParameterCombination.create({"period": 14}, tp, sl, trailing, start, stop)
    return PseudoPosition(
        id="p1", configuration_set_id="cs1", symbol="BTCUSDT", direction=direction,
        indicator_type="rsi", combination=combo, entry_price=entry,
        opened_at=kw.pop("opened_at", NOW - timedelta(hours=1)), **kw,
    )


def test_calc_levels():
    tp, sl = calc_levels("long", 100, 5, 2)
    assert tp == pytest.approx(105) and sl == pytest.approx(98)
    tp, sl = calc_levels("short", 100, 5, 2)
    assert tp == pytest.approx(95) and sl == pytest.approx(102)
    assert calc_levels("long", 0, 5, 2) == (None, None)
    assert calc_levels("sideways", 100, 5, 2) == (None, None)


def test_calc_pnl_applies_quantity_and_leverage():
    assert calc_pnl(_pos(), 101) == pytest.approx((100.0, 1.0))
    assert calc_pnl(_pos(leverage=3), 101) == pytest.approx((300.0, 3.0))
    assert calc_pnl(_pos("short"), 99) == pytest.approx((100.0, 1.0))


def test_take_profit_and_stop_loss():
    tp = check_exit(_pos(), 105, NOW)
    assert tp.closes and tp.exit.exit_reason == "takeprofit"
    assert tp.exit.realized_pnl == pytest.approx(500.0)
    assert tp.exit.closed_at == NOW

    sl = check_exit(_pos(), 98, NOW)
    assert sl.exit.exit_reason == "stoploss"
    assert sl.exit.realized_pnl == pytest.approx(-200.0)

    assert check_exit(_pos("short"), 95, NOW).exit.exit_reason == "takeprofit"
    assert check_exit(_pos("short"), 102, NOW).exit.exit_reason == "stoploss"


def test_position_stays_open_between_levels():
    up = check_exit(_pos(), 101, NOW)
    assert not up.closes
    assert up.current_price == 101
    assert up.unrealized_pnl == pytest.approx(100.0)
    # +1 % is below the 2 % trail start
    assert up.best_price is None


def test_trailing_arms_and_then_exits():
    pos = _pos()
    armed = check_exit(pos, 103, NOW)
    assert not armed.closes
    assert armed.best_price == 103

    pos.best_price = armed.best_price
    out = check_exit(pos, 101.9, NOW)
    assert out.exit.exit_reason == "trailing_stop"
    assert out.exit.exit_price == 101.9


def test_trailing_anchor_only_moves_in_favour():
    pos = _pos(best_price=104.0)
    assert trailing_anchor(pos, 103.5) == 104.0
    assert trailing_anchor(pos, 104.5) == 104.5

    short = _pos("short", best_price=97.0)
    assert trailing_anchor(short, 96.0) == 96.0
    assert trailing_anchor(short, 98.0) == 97.0

    assert trailing_anchor(_pos(trailing=False), 120) is None


def test_timeout_only_when_configured():
    old = _pos(opened_at=NOW - timedelta(hours=5))
    assert not check_exit(old, 100.5, NOW).closes
    out = check_exit(old, 100.5, NOW, timeout_hours=4)
    assert out.exit.exit_reason == "timeout"
    assert not check_exit(old, 100.5, NOW, timeout_hours=6).closes
