# scripts/run_sweep.py
from __future__ import annotations

import sys
from pathlib import Path

# --- repo root on sys.path (keep) ---
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import argparse
import pandas as pd

from backtest.generator import count_combinations, generate_combinations
from execution.coordinator import CoordinationEngine, CycleReport
from main import build_engine
from utils.config import load_config, build_settings
from utils.errors import DataInsufficient
from utils.logger import log_dataframe, today_filename, set_level


def _pick_set(settings, set_id: str | None):
    sets = settings.configuration_sets
    if not sets:
        raise SystemExit("No configuration_sets in config.")
    if set_id is None:
        return sets[0]
    for cs in sets:
        if cs.id == set_id:
            return cs
    raise SystemExit(f"Unknown configuration set '{set_id}'. Known: {', '.join(s.id for s in sets)}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sweep one configuration set over recent history and report the results.")
    parser.add_argument("--config", default="config.yaml", help="Path to config file (default: config.yaml)")
    parser.add_argument("--set", dest="set_id", help="Configuration set id (default: first in config)")
    parser.add_argument("--symbol", action="append", help="Symbol to sweep (repeatable; default: the set's symbols)")
    parser.add_argument("--limit", type=int, help="Cap on combinations (default: engine.max_combinations)")
    parser.add_argument("--memory", action="store_true", help="Keep results in memory instead of the database")
    parser.add_argument("--top", type=int, default=10, help="Rows to print per symbol (default: 10)")
    args = parser.parse_args()

    settings = build_settings(load_config(args.config))
    set_level(settings.log_level)
    if args.memory:
        settings.storage_backend = "memory"
    if args.limit:
        settings.max_combinations = args.limit
    cs = _pick_set(settings, args.set_id)

    engine: CoordinationEngine = build_engine(settings)
    symbols = [s.upper() for s in args.symbol] if args.symbol else engine.symbols_for(cs)
    total = count_combinations(cs)
    print(f"[Sweep] set={cs.id} indicator={cs.indicator_type} symbols={len(symbols)} "
          f"combinations={total} (cap {settings.max_combinations})")

    report = CycleReport()
    frames = []
    for sym in symbols:
        try:
            frame = engine.load_history(cs, sym)
        except DataInsufficient as e:
            print(f"[{sym}] skipped: {e}")
            continue
        combos = generate_combinations(cs, limit=settings.max_combinations)
        results = engine.score_combinations(cs, sym, frame, combos, report)
        if not results:
            continue
        df = pd.DataFrame([r.to_row() for r in results])
        frames.append(df)

        top = df.sort_values(["is_valid", "profit_factor"], ascending=[False, False]).head(args.top)
        cols = ["take_profit_factor", "stop_loss_ratio", "trailing_enabled", "indicator_params",
                "profit_factor", "win_rate", "total_trades", "max_drawdown", "is_valid"]
        print(f"\n[{sym}] {len(df)} scored, {int(df['is_valid'].sum())} valid")
        print(top[cols].to_string(index=False))

    if frames:
        out = today_filename(f"sweep_{cs.id}", unique=True, root=settings.export_dir)
        log_dataframe(pd.concat(frames, ignore_index=True), out)
        print(f"\nResults written to {out}")
    print(f"\nScored {report.combinations_scored} | failed {report.combinations_failed} | "
          f"valid {report.valid_results} | persistence failures {report.persistence_failures}")
    engine.store.close()
