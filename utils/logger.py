import logging
from pathlib import Path
from datetime import date, datetime

import pandas as pd
from tqdm import tqdm

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_ROOT = "preset"


class TqdmHandler(logging.Handler):
    """Route records through tqdm.write so log lines don't tear progress bars."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record))
        except Exception:
            self.handleError(record)


def _root() -> logging.Logger:
    root = logging.getLogger(_ROOT)
    if not any(isinstance(h, TqdmHandler) for h in root.handlers):
        h = TqdmHandler()
        h.setFormatter(logging.Formatter(_FORMAT, "%H:%M:%S"))
        root.addHandler(h)
        root.setLevel(logging.INFO)
        root.propagate = False
    return root


def get_logger(name: str) -> logging.Logger:
    """Child of the project logger, e.g. get_logger(__name__) -> preset.execution.engine."""
    _root()
    return logging.getLogger(f"{_ROOT}.{name}")


def set_level(level: str | int) -> None:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level: {level}")
        level = resolved
    _root().setLevel(level)


def log_dataframe(df: pd.DataFrame, out_path: Path, overwrite: bool = True):
    """
    Write DataFrame to CSV.
    overwrite=False appends, writing the header only for a new file.
    """
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if overwrite:
        df.to_csv(out_path, mode="w", header=True, index=False)
    else:
        header = not out_path.exists()
        df.to_csv(out_path, mode="a", header=header, index=False)


def today_filename(prefix: str, unique: bool = False, root: str | Path = "logs") -> Path:
    """
    Returns path like logs/prefix_YYYY-MM-DD.csv.
    If unique=True, include timestamp to second for multiple cycles per day.
    """
    if unique:
        stamp = datetime.now().strftime("%Y-%m-%d_%H%M%S")
        return Path(root) / f"{prefix}_{stamp}.csv"
    return Path(root) / f"{prefix}_{date.today()}.csv"
