import os
import sys

import pandas as pd
import pytest
import requests

# Ensure project root is on sys.path for module resolution
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import broker.bybit as bybit
from broker.bybit import BybitClient, interval_minutes
from data.fetcher import MarketData
from utils.errors import DataSourceError
from utils.file_cache import FileCache

HOUR_MS = 3_600_000


class FakeResponse:
    def __init__(self, payload=None, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Returns queued responses (or a handler's) and records every request."""

    def __init__(self, responses=None, handler=None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {})))
        if self.handler:
            return self.handler(url, params)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def ok(result):
    return FakeResponse({"retCode": 0, "retMsg": "OK", "result": result})


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr(bybit.time, "sleep", lambda s: None)


def _client(session, **kw):
    return BybitClient(base_url="https://example.test", session=session, requests_per_minute=100_000, **kw)


def test_interval_minutes():
    assert interval_minutes("60") == 60
    assert interval_minutes("d") == 1440
    assert interval_minutes("W") == 10080


def test_retries_transient_failures_then_succeeds():
    session = FakeSession([
        requests.ConnectionError("reset"),
        FakeResponse(status=503),
        FakeResponse({"retCode": 10006, "retMsg": "Too many visits"}),
        ok({"list": []}),
    ])
    client = _client(session)
    assert client._get("/v5/market/tickers", {}) == {"list": []}
    counts = client.get_rate_limit_counts()
    assert counts["total_calls"] == 4
    assert counts["retries"] == 3
    assert counts["rate_limited"] == 1


def test_gives_up_after_max_attempts():
    session = FakeSession([FakeResponse(status=500)] * 3)
    with pytest.raises(DataSourceError):
        _client(session, max_attempts=3)._get("/v5/market/tickers", {})
    assert len(session.calls) == 3


def test_non_retryable_errors_raise_immediately():
    with pytest.raises(DataSourceError):
        _client(FakeSession([FakeResponse(status=404)]))._get("/x", {})
    session = FakeSession([FakeResponse({"retCode": 10001, "retMsg": "params error"})])
    with pytest.raises(DataSourceError, match="10001"):
        _client(session)._get("/x", {})
    assert len(session.calls) == 1


def test_current_prices_single_call_filtered():
    session = FakeSession([ok({"list": [
        {"symbol": "BTCUSDT", "lastPrice": "65000.5"},
        {"symbol": "ETHUSDT", "lastPrice": "3100"},
        {"symbol": "XRPUSDT", "lastPrice": "0.5"},
        {"symbol": "DEADUSDT", "lastPrice": "0"},
    ]})])
    prices = _client(session).get_current_prices(["BTCUSDT", "ethusdt", "DEADUSDT", "NOPEUSDT"])
    assert prices == {"BTCUSDT": 65000.5, "ETHUSDT": 3100.0}
    assert len(session.calls) == 1
    assert "symbol" not in session.calls[0][1]


def test_current_prices_single_symbol_uses_symbol_filter():
    session = FakeSession([ok({"list": [{"symbol": "BTCUSDT", "lastPrice": "1"}]})])
    assert _client(session).get_current_prices(["BTCUSDT"]) == {"BTCUSDT": 1.0}
    assert session.calls[0][1]["symbol"] == "BTCUSDT"
    assert _client(FakeSession()).get_current_prices([]) == {}


def test_top_symbols_ranked_by_turnover():
    session = FakeSession([ok({"list": [
        {"symbol": "BTCUSDT", "turnover24h": "900"},
        {"symbol": "ETHUSDT", "turnover24h": "500"},
        {"symbol": "BTCPERP", "turnover24h": "9999"},
        {"symbol": "SOLUSDT", "turnover24h": "700"},
    ]})])
    assert _client(session).top_symbols(limit=2) == ["BTCUSDT", "SOLUSDT"]


def _kline_handler(start_hour, end_hour):
    """Serves hourly bars newest first, honouring `end` and `limit` like the exchange."""
    def handler(url, params):
        end = params["end"]
        limit = params["limit"]
        hours = [h for h in range(end_hour - 1, start_hour - 1, -1) if h * HOUR_MS <= end][:limit]
        rows = [[str(h * HOUR_MS), "1", "2", "0.5", str(h), "10", "0"] for h in hours]
        return ok({"list": rows})
    return handler


def test_klines_page_backwards_until_window_start(monkeypatch):
    monkeypatch.setattr(bybit, "KLINE_LIMIT", 3)
    session = FakeSession(handler=_kline_handler(0, 8))
    df = _client(session).get_klines("BTCUSDT", "60", 0, 8 * HOUR_MS)
    assert len(df) == 8
    assert df.index.is_monotonic_increasing
    assert list(df["Close"]) == [float(h) for h in range(8)]
    assert list(df.columns) == ["Open", "High", "Low", "Close", "Volume"]
    assert len(session.calls) == 3


def test_empty_klines_frame():
    df = _client(FakeSession([ok({"list": []})])).get_klines("BTCUSDT", "60", 0, HOUR_MS)
    assert df.empty
    assert isinstance(df.index, pd.DatetimeIndex)


def test_market_data_caches_history(tmp_path):
    session = FakeSession(handler=_kline_handler(0, 48))
    market = MarketData(_client(session), FileCache(str(tmp_path)), interval="60")
    end_ms = 48 * HOUR_MS + 1234
    first = market.get_historical_prices("BTCUSDT", 1, end_ms=end_ms)
    calls = len(session.calls)
    second = market.get_historical_prices("BTCUSDT", 1, end_ms=end_ms)
    assert len(session.calls) == calls
    assert len(first) == 24
    pd.testing.assert_frame_equal(first, second, check_freq=False)


def test_market_data_top_symbols_empty_is_an_error():
    market = MarketData(_client(FakeSession([ok({"list": []})])))
    with pytest.raises(DataSourceError):
        market.top_symbols(limit=5)
