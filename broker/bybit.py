"""
broker.bybit
------------
Public Bybit v5 market-data client (no keys, no order placement).

- get_klines         : OHLCV history, paginated newest -> oldest
- get_current_prices : last prices for many symbols from one /tickers call
- top_symbols        : most active symbols by 24 h turnover / volume
"""

from __future__ import annotations
import os
import threading, time
from typing import Any, Dict, Iterable, List, Optional

from dotenv import load_dotenv
import pandas as pd
import requests

from utils.errors import DataSourceError
from utils.logger import get_logger

log = get_logger(__name__)

# ---- env ---------------------------------------------------------------
load_dotenv()  # read .env

DEFAULT_BASE = os.getenv("BYBIT_BASE", "https://api.bybit.com")
KLINE_LIMIT = 1000
RATE_LIMITED = 10006  # retCode "Too many visits"

_INTERVAL_MINUTES = {"D": 1440, "W": 10080, "M": 43200}


def interval_minutes(interval: str) -> int:
    s = str(interval).upper()
    if s in _INTERVAL_MINUTES:
        return _INTERVAL_MINUTES[s]
    return int(s)


class RateLimiter:
    """Leaky-bucket limiter.

    Tokens refill continuously with elapsed time so callers spread out instead
    of hitting a hard per-minute cliff. With <1 token available, sleeps just
    long enough to accrue one.
    """

    def __init__(self, max_per_min: int = 600):
        self.max_per_min = float(max_per_min)
        self.rate_per_sec = self.max_per_min / 60.0
        self._tokens = self.max_per_min
        self._last_refill = time.monotonic()
        self._lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            with self._lock:
                now = time.monotonic()
                elapsed = now - self._last_refill
                if elapsed > 0:
                    self._tokens = min(self.max_per_min, self._tokens + elapsed * self.rate_per_sec)
                    self._last_refill = now
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                wait = (1.0 - self._tokens) / self.rate_per_sec
            # outside lock
            if wait > 0.25:
                log.debug("rate-limit: sleeping %.2fs", wait)
            time.sleep(wait)


class BybitClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        category: str = "linear",
        requests_per_minute: int = 600,
        timeout: float = 20.0,
        max_attempts: int = 4,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or DEFAULT_BASE).rstrip("/")
        self.category = category
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.session = session or requests.Session()
        self.limiter = RateLimiter(requests_per_minute)
        self._stats_lock = threading.Lock()
        self.total_calls = 0
        self.retries = 0
        self.rate_limited = 0

    # ---- transport -------------------------------------------------------
    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """GET with client-side rate limiting + bounded retry on transient failures.

        Returns the `result` object; raises DataSourceError once attempts run out
        or on a non-retryable API error.
        """
        url = f"{self.base_url}{path}"
        backoff = 0.6
        last_err: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            self.limiter.acquire()
            with self._stats_lock:
                self.total_calls += 1
            try:
                r = self.session.get(url, params=params, timeout=self.timeout)
                if r.status_code == 429 or r.status_code >= 500:
                    raise requests.HTTPError(f"HTTP {r.status_code}", response=r)
                r.raise_for_status()
                js = r.json()
            except (requests.RequestException, ValueError) as e:
                last_err = e
                status = getattr(getattr(e, "response", None), "status_code", None)
                transient = status is None or status == 429 or status >= 500
                if transient and attempt < self.max_attempts:
                    with self._stats_lock:
                        self.retries += 1
                    time.sleep(backoff)
                    backoff *= 1.6
                    continue
                raise DataSourceError(f"GET {path} failed: {e}") from e

            rc = js.get("retCode")
            try:
                rc_i = int(rc)
            except (TypeError, ValueError):
                rc_i = -1
            if rc_i == 0:
                return js.get("result") or {}
            if rc_i == RATE_LIMITED and attempt < self.max_attempts:
                with self._stats_lock:
                    self.rate_limited += 1
                    self.retries += 1
                time.sleep(backoff)
                backoff *= 1.6
                continue
            raise DataSourceError(f"Bybit error {rc}: {js.get('retMsg')}")
        raise DataSourceError(f"GET {path} failed after {self.max_attempts} attempts: {last_err}")

    def get_rate_limit_counts(self) -> dict:
        with self._stats_lock:
            return {
                "total_calls": self.total_calls,
                "retries": self.retries,
                "rate_limited": self.rate_limited,
                "max_per_min": self.limiter.max_per_min,
            }

    # ---- market data -----------------------------------------------------
    def get_klines(self, symbol: str, interval: str, start_ms: int, end_ms: int) -> pd.DataFrame:
        """OHLCV between start_ms (inclusive) and end_ms (exclusive), oldest first.

        Columns Open/High/Low/Close/Volume on a UTC-naive DatetimeIndex.
        """
        rows: Dict[int, List[float]] = {}
        cursor_end = end_ms
        while cursor_end > start_ms:
            res = self._get("/v5/market/kline", {
                "category": self.category,
                "symbol": symbol,
                "interval": interval,
                "start": start_ms,
                "end": cursor_end,
                "limit": KLINE_LIMIT,
            })
            lst = res.get("list") or []
            if not lst:
                break
            # [startTime, open, high, low, close, volume, turnover], newest first
            for row in lst:
                try:
                    ts = int(row[0])
                    if start_ms <= ts < end_ms:
                        rows[ts] = [float(row[1]), float(row[2]), float(row[3]), float(row[4]), float(row[5])]
                except (TypeError, ValueError, IndexError):
                    continue
            earliest = int(lst[-1][0])
            if earliest >= cursor_end or len(lst) < KLINE_LIMIT:
                break
            cursor_end = earliest - 1
        return klines_frame(rows)

    def get_current_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Last prices for the requested symbols; symbols the exchange doesn't list are absent."""
        wanted = {s.upper() for s in symbols}
        if not wanted:
            return {}
        params: Dict[str, Any] = {"category": self.category}
        if len(wanted) == 1:
            params["symbol"] = next(iter(wanted))
        res = self._get("/v5/market/tickers", params)
        out: Dict[str, float] = {}
        for t in res.get("list") or []:
            sym = str(t.get("symbol", "")).upper()
            if sym not in wanted:
                continue
            try:
                px = float(t.get("lastPrice"))
            except (TypeError, ValueError):
                continue
            if px > 0:
                out[sym] = px
        return out

    def top_symbols(self, limit: int = 10, order_by: str = "turnover24h", quote: str = "USDT") -> List[str]:
        res = self._get("/v5/market/tickers", {"category": self.category})
        ranked = []
        for t in res.get("list") or []:
            sym = str(t.get("symbol", "")).upper()
            if quote and not sym.endswith(quote):
                continue
            try:
                ranked.append((float(t.get(order_by) or 0.0), sym))
            except (TypeError, ValueError):
                continue
        ranked.sort(key=lambda x: (-x[0], x[1]))
        return [s for _, s in ranked[:limit]]


def klines_frame(rows: Dict[int, List[float]]) -> pd.DataFrame:
    cols = ["Open", "High", "Low", "Close", "Volume"]
    if not rows:
        return pd.DataFrame(columns=cols, index=pd.DatetimeIndex([], name="Date"))
    ts = sorted(rows)
    df = pd.DataFrame([rows[t] for t in ts], columns=cols,
                      index=pd.to_datetime(ts, unit="ms"))
    df.index.name = "Date"
    return df
