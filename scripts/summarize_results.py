# scripts/summarize_results.py
from __future__ import annotations
import sys
from pathlib import Path

# --- make repo root importable when run as a script ---
PROJECT_ROOT = Path(__file__).resolve().parents[1]  # parent of "scripts"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pandas as pd


def summarize(df: pd.DataFrame) -> dict:
    """Headline numbers for an exported results CSV (one row per scored combination)."""
    if df.empty:
        return {"rows": 0, "symbols": 0, "valid": 0, "valid_rate": 0.0}
    valid = df[df["is_valid"].astype(bool)]
    out = {
        "rows": len(df),
        "symbols": int(df["symbol"].nunique()),
        "valid": len(valid),
        "valid_rate": len(valid) / len(df),
        "median_pf": float(df["profit_factor"].median()),
        "median_trades": float(df["total_trades"].median()),
    }
    if not valid.empty:
        out["best_pf"] = float(valid["profit_factor"].max())
        out["median_valid_drawdown"] = float(valid["max_drawdown"].median())
    return out


def failing_reasons(df: pd.DataFrame) -> pd.Series:
    """How often each check fails, from the '; '-joined validation_reason column."""
    bad = df.loc[~df["is_valid"].astype(bool), "validation_reason"].fillna("")
    parts = bad.str.split("; ").explode()
    # "profit factor 0.80 < 1.20" -> "profit factor"
    labels = parts.str.replace(r"\s[\d.]+\s<.*$", "", regex=True).str.replace(r"\s\(.*\)$", "", regex=True)
    return labels[labels != ""].value_counts()


def main(path: str | None = None):
    if path is None:
        logs = sorted(Path("logs").glob("sweep_*.csv"))
        if not logs:
            print("No sweep_*.csv under logs/.")
            sys.exit(1)
        p = logs[-1]
    else:
        p = Path(path)
    if not p.exists():
        print(f"File not found: {p}")
        sys.exit(1)

    df = pd.read_csv(p)
    s = summarize(df)
    print(f"File: {p.name}")
    print(f"Rows: {s['rows']:,}  Symbols: {s['symbols']}  Valid: {s['valid']} ({s['valid_rate']:0.1%})\n")
    if df.empty:
        return

    print("Failing checks (invalid rows):")
    for label, cnt in failing_reasons(df).items():
        print(f"  {label:<28}: {cnt:7d}")
    print()

    print("Per symbol:")
    per = df.groupby("symbol").agg(
        rows=("profit_factor", "size"),
        valid=("is_valid", "sum"),
        best_pf=("profit_factor", "max"),
        median_trades=("total_trades", "median"),
    ).sort_values("best_pf", ascending=False)
    print(per.to_string())
    print()

    print("TP / SL of valid rows:")
    valid = df[df["is_valid"].astype(bool)]
    if valid.empty:
        print("  (none)")
    else:
        grid = valid.pivot_table(index="take_profit_factor", columns="stop_loss_ratio",
                                 values="profit_factor", aggfunc="count", fill_value=0)
        print(grid.to_string())


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
