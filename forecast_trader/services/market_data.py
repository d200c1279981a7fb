"""Recent price history retrieval for per-symbol analysis."""

from __future__ import annotations

from typing import Protocol, Sequence

import pandas as pd

from forecast_trader.services.errors import FetchError
from forecast_trader.services.logging import get_logger
from forecast_trader.services.types import PriceWindow

OHLCV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]


class CandleSource(Protocol):
    async def get_candles(
        self, symbol: str, interval: str, limit: int
    ) -> Sequence[Sequence[float]]: ...


class MarketDataPort:
    """Fetch a fixed-length :class:`PriceWindow` for a symbol."""

    def __init__(self, source: CandleSource, *, lookback: int = 100, timeframe: str = "5m") -> None:
        if lookback <= 0:
            raise ValueError("lookback must be positive")
        self._source = source
        self._lookback = int(lookback)
        self._timeframe = timeframe
        self._logger = get_logger(__name__)

    @property
    def lookback(self) -> int:
        return self._lookback

    @property
    def timeframe(self) -> str:
        return self._timeframe

    async def fetch_window(self, symbol: str) -> PriceWindow:
        try:
            rows = await self._source.get_candles(symbol, self._timeframe, self._lookback)
        except Exception as exc:  # noqa: BLE001 - connectivity failures become FetchError
            raise FetchError(symbol, f"candle request failed: {exc}") from exc

        frame = self._to_frame(symbol, rows)
        if len(frame) < self._lookback:
            raise FetchError(
                symbol, f"insufficient history: {len(frame)} of {self._lookback} candles"
            )
        frame = frame.tail(self._lookback)
        self._logger.debug("Fetched %d %s candles for %s", len(frame), self._timeframe, symbol)
        return PriceWindow(
            symbol=symbol,
            closes=tuple(frame["close"].tolist()),
            highs=tuple(frame["high"].tolist()),
            lows=tuple(frame["low"].tolist()),
        )

    @staticmethod
    def _to_frame(symbol: str, rows: Sequence[Sequence[float]] | None) -> pd.DataFrame:
        """Normalise ccxt OHLCV rows, dropping malformed or non-positive candles."""

        if not rows:
            return pd.DataFrame(columns=OHLCV_COLUMNS)
        try:
            frame = pd.DataFrame([list(row)[: len(OHLCV_COLUMNS)] for row in rows])
        except TypeError as exc:
            raise FetchError(symbol, f"malformed candle payload: {exc}") from exc
        if frame.shape[1] < 5:
            raise FetchError(symbol, "candles are missing OHLC columns")
        frame.columns = OHLCV_COLUMNS[: frame.shape[1]]
        prices = frame[["high", "low", "close"]].apply(pd.to_numeric, errors="coerce")
        frame[["high", "low", "close"]] = prices
        frame = frame.dropna(subset=["high", "low", "close"])
        frame = frame[(frame["close"] > 0) & (frame["high"] > 0) & (frame["low"] > 0)]
        if "timestamp" in frame:
            frame = frame.sort_values("timestamp", kind="stable")
        return frame.astype({"high": float, "low": float, "close": float})


__all__ = ["CandleSource", "MarketDataPort", "OHLCV_COLUMNS"]
