import sys
from pathlib import Path

import pandas as pd

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scripts.summarize_results import failing_reasons, summarize


def _df():
    return pd.DataFrame([
        {"symbol": "BTCUSDT", "is_valid": True, "profit_factor": 1.8, "total_trades": 20,
         "max_drawdown": 4.0, "validation_reason": "Valid"},
        {"symbol": "BTCUSDT", "is_valid": False, "profit_factor": 0.8, "total_trades": 5,
         "max_drawdown": 9.0,
         "validation_reason": "profit factor 0.80 < 1.20; trades 5 < 10; "
                              "no recent profit (last 25 / last 50 profit factor are 0)"},
        {"symbol": "ETHUSDT", "is_valid": False, "profit_factor": 1.0, "total_trades": 30,
         "max_drawdown": 2.0, "validation_reason": "profit factor 1.00 < 1.20"},
    ])


def test_summarize_headline_numbers():
    s = summarize(_df())
    assert s["rows"] == 3
    assert s["symbols"] == 2
    assert s["valid"] == 1
    assert s["best_pf"] == 1.8
    assert s["median_valid_drawdown"] == 4.0
    assert summarize(pd.DataFrame())["rows"] == 0


def test_failing_reasons_counts_each_check():
    counts = failing_reasons(_df())
    assert counts["profit factor"] == 2
    assert counts["trades"] == 1
    assert counts["no recent profit"] == 1
