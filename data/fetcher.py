# data/fetcher.py
"""
Market data facade used by the engine: historical OHLCV (cached on disk) and
batched current prices, both from the public Bybit client.
"""

from __future__ import annotations
import time
from typing import Dict, Iterable, List, Optional

import pandas as pd

from broker.bybit import BybitClient, interval_minutes
from utils.errors import DataSourceError
from utils.file_cache import FileCache
from utils.logger import get_logger

log = get_logger(__name__)


class MarketData:
    def __init__(self, client: BybitClient, cache: Optional[FileCache] = None, interval: str = "60"):
        self.client = client
        self.cache = cache
        self.interval = str(interval)

    def get_historical_prices(self, symbol: str, range_days: int, interval: Optional[str] = None,
                              end_ms: Optional[int] = None) -> pd.DataFrame:
        """
        OHLCV for the last `range_days`, oldest first.
        Returns a DataFrame with columns: Open, High, Low, Close, Volume.
        The window end is floored to the interval so cache keys repeat within a bar.
        """
        iv = str(interval or self.interval)
        step_ms = interval_minutes(iv) * 60_000
        end = end_ms if end_ms is not None else int(time.time() * 1000)
        end = end - (end % step_ms)
        start = end - int(range_days) * 86_400_000
        key = f"klines:{self.client.category}:{symbol}:{iv}:{start}:{end}"

        if self.cache is not None:
            hit = self.cache.get_frame(key)
            if hit is not None:
                return hit
        df = self.client.get_klines(symbol, iv, start, end)
        if self.cache is not None and not df.empty:
            self.cache.set_frame(key, df)
        return df

    def get_current_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        return self.client.get_current_prices(list(symbols))

    def top_symbols(self, limit: int = 10, order_by: str = "turnover24h") -> List[str]:
        syms = self.client.top_symbols(limit=limit, order_by=order_by)
        if not syms:
            raise DataSourceError("exchange returned no symbols")
        return syms
