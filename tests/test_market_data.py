from __future__ import annotations

import asyncio

import pytest

from forecast_trader.services.errors import FetchError
from forecast_trader.services.market_data import MarketDataPort
from tests.fakes import FakeExchange, make_candles


def test_fetch_window_returns_last_lookback_candles() -> None:
    closes = [100.0 + index for index in range(30)]
    exchange = FakeExchange(candles={"BTC/USD": make_candles(closes)})
    port = MarketDataPort(exchange, lookback=20, timeframe="5m")

    window = asyncio.run(port.fetch_window("BTC/USD"))

    assert len(window) == 20
    assert window.closes == tuple(closes[-20:])
    assert window.last_close == pytest.approx(129.0)
    assert window.highs[-1] == pytest.approx(129.0 * 1.01)
    assert window.lows[-1] == pytest.approx(129.0 * 0.99)


def test_short_history_raises_fetch_error() -> None:
    exchange = FakeExchange(candles={"BTC/USD": make_candles([100.0] * 5)})
    port = MarketDataPort(exchange, lookback=10)

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(port.fetch_window("BTC/USD"))

    assert "insufficient history" in excinfo.value.reason


def test_empty_history_raises_fetch_error() -> None:
    port = MarketDataPort(FakeExchange(), lookback=10)

    with pytest.raises(FetchError):
        asyncio.run(port.fetch_window("SOL/USD"))


def test_connectivity_failure_becomes_fetch_error() -> None:
    exchange = FakeExchange(candles={"BTC/USD": ConnectionError("socket closed")})
    port = MarketDataPort(exchange, lookback=10)

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(port.fetch_window("BTC/USD"))

    assert excinfo.value.symbol == "BTC/USD"
    assert "socket closed" in str(excinfo.value)


def test_malformed_rows_are_dropped_and_sorted() -> None:
    rows = make_candles([100.0 + index for index in range(12)])
    rows.insert(3, [rows[3][0] + 1, 1.0, None, 1.0, "bad", 1.0])
    rows.append([rows[-1][0] + 1, 1.0, 1.0, 1.0, 0.0, 1.0])
    rows.reverse()

    class _AllRows:
        async def get_candles(self, symbol: str, interval: str, limit: int):
            return rows

    port = MarketDataPort(_AllRows(), lookback=12)

    window = asyncio.run(port.fetch_window("BTC/USD"))

    assert window.closes == tuple(100.0 + index for index in range(12))


def test_lookback_must_be_positive() -> None:
    with pytest.raises(ValueError):
        MarketDataPort(FakeExchange(), lookback=0)
