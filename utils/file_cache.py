"""On-disk JSON cache for kline history, keyed by md5 of the request, expiring after ttl_days."""
import hashlib
import json
import threading
import time
from pathlib import Path
from typing import Any

import pandas as pd

_FRAME_COLUMNS = ["Open", "High", "Low", "Close", "Volume"]


class FileCache:
    def __init__(self, root: str, ttl_days: float = 1):
        self.root = Path(root)
        self.ttl = ttl_days * 86400
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        h = hashlib.md5(key.encode("utf-8")).hexdigest()
        return self.root / f"{h}.json"

    def get(self, key: str) -> Any | None:
        p = self._path(key)
        if not p.exists():
            return None
        if self.ttl > 0 and (time.time() - p.stat().st_mtime) > self.ttl:
            return None
        try:
            with p.open("r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError):
            # unreadable entry counts as a miss
            return None

    def set(self, key: str, value: Any) -> None:
        p = self._path(key)
        tmp = p.with_suffix(".tmp")
        with self._lock:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(value, f, ensure_ascii=False, default=str)
            tmp.replace(p)

    # ---- OHLCV frames ----
    def get_frame(self, key: str) -> pd.DataFrame | None:
        raw = self.get(key)
        if not raw or "index" not in raw or "rows" not in raw:
            return None
        df = pd.DataFrame(raw["rows"], columns=_FRAME_COLUMNS,
                          index=pd.to_datetime(raw["index"], unit="ms"))
        df.index.name = "Date"
        return df

    def set_frame(self, key: str, df: pd.DataFrame) -> None:
        index_ms = [int(ts.value // 1_000_000) for ts in pd.DatetimeIndex(df.index)]
        self.set(key, {"index": index_ms, "rows": df[_FRAME_COLUMNS].to_numpy().tolist()})
