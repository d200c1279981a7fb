"""Kraken WebSocket OHLC subscription used as a market-data liveness signal."""

from __future__ import annotations

import asyncio
import json
import random
import time
from typing import Callable, Dict, List, Mapping, Optional

import websockets

from forecast_trader.services.logging import get_logger
from forecast_trader.services.monitoring import MonitoringCenter, get_monitoring_center

CandleCallback = Callable[[str, Mapping[str, float]], None]

# Kraken keeps legacy asset codes on its public feeds.
_NATIVE_TO_DISPLAY: dict[str, str] = {"XBT": "BTC", "XDG": "DOGE"}
_DISPLAY_TO_NATIVE: dict[str, str] = {
    display: native for native, display in _NATIVE_TO_DISPLAY.items()
}

KRAKEN_INTERVALS = (1, 5, 15, 30, 60, 240, 1440, 10080, 21600)
_TIMEFRAME_UNITS = {"m": 1, "h": 60, "d": 1440, "w": 10080}


def timeframe_to_minutes(timeframe: str) -> int:
    """Translate a ccxt timeframe such as ``"5m"`` into a Kraken OHLC interval."""

    text = str(timeframe).strip().lower()
    if len(text) < 2 or text[-1] not in _TIMEFRAME_UNITS or not text[:-1].isdigit():
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    minutes = int(text[:-1]) * _TIMEFRAME_UNITS[text[-1]]
    if minutes not in KRAKEN_INTERVALS:
        raise ValueError(f"Kraken does not stream {timeframe} candles")
    return minutes


class CandleStream:
    """Maintain a Kraken OHLC subscription and per-symbol update timestamps.

    Updates are only used to tell whether the feed for a symbol is alive;
    trading decisions always come from REST history.
    """

    def __init__(
        self,
        symbols: List[str],
        timeframe: str = "5m",
        *,
        url: str = "wss://ws.kraken.com/",
        connector: Callable[..., object] | None = None,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        monitoring_center: MonitoringCenter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        normalised: list[str] = []
        for candidate in symbols:
            symbol = self._normalize_symbol(candidate)
            if symbol and symbol not in normalised:
                normalised.append(symbol)
        if not normalised:
            raise ValueError("At least one valid symbol must be provided")
        self._symbols = normalised
        self._interval = timeframe_to_minutes(timeframe)
        self._display_to_native = {symbol: self._map_to_native(symbol) for symbol in normalised}
        self._native_to_display = {value: key for key, value in self._display_to_native.items()}
        self._url = url
        self._connector = connector or websockets.connect
        self._base_retry_delay = max(0.1, float(reconnect_base_delay))
        self._max_retry_delay = max(self._base_retry_delay, float(reconnect_max_delay))
        self._reconnect_attempts = 0
        self._callbacks: Dict[str, List[CandleCallback]] = {}
        self._last_update: Dict[str, float] = {}
        self._latest: Dict[str, Dict[str, float]] = {}
        self._clock = clock
        self._monitoring = monitoring_center or get_monitoring_center()
        self._logger = get_logger(__name__)
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    def subscribe_candles(self, symbol: str, on_update: CandleCallback) -> None:
        """Register ``on_update(symbol, candle)`` for every candle update."""

        normalised = self._normalize_symbol(symbol)
        if normalised not in self._display_to_native:
            raise ValueError(f"{symbol} is not part of this stream")
        self._callbacks.setdefault(normalised, []).append(on_update)

    def latest_candle(self, symbol: str) -> Optional[Dict[str, float]]:
        candle = self._latest.get(symbol)
        return dict(candle) if candle is not None else None

    def seconds_since_update(self, symbol: str) -> Optional[float]:
        last = self._last_update.get(symbol)
        if last is None:
            return None
        return max(0.0, self._clock() - last)

    def stale_symbols(self, max_age_seconds: float) -> list[str]:
        """Symbols with no update within ``max_age_seconds`` (or none at all)."""

        stale: list[str] = []
        for symbol in self._symbols:
            age = self.seconds_since_update(symbol)
            if age is None or age > max_age_seconds:
                stale.append(symbol)
        return stale

    async def start(self) -> None:
        if self._task is None:
            self._stop_event.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                async with self._connector(self._url, ping_interval=20) as websocket:
                    self._monitoring.record_event(
                        "candle_stream_connected",
                        "INFO",
                        "Candle stream connected",
                        metadata={"attempt": self._reconnect_attempts, "symbols": self.symbols},
                    )
                    self._reconnect_attempts = 0
                    await self._subscribe(websocket)
                    async for message in websocket:
                        if self._stop_event.is_set():
                            break
                        self._handle_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - feed drops must not stop the agent
                if self._stop_event.is_set():
                    break
                self._reconnect_attempts += 1
                delay = self._compute_backoff_delay(self._reconnect_attempts)
                self._logger.warning(
                    "Candle stream reconnect %d in %.2fs due to %s",
                    self._reconnect_attempts,
                    delay,
                    exc,
                )
                self._monitoring.record_event(
                    "candle_stream_reconnect",
                    "WARNING",
                    "Candle stream reconnect scheduled",
                    metadata={
                        "attempt": self._reconnect_attempts,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                await asyncio.sleep(delay)

    async def _subscribe(self, websocket: object) -> None:
        payload = {
            "event": "subscribe",
            "pair": [self._display_to_native[symbol] for symbol in self._symbols],
            "subscription": {"name": "ohlc", "interval": self._interval},
        }
        await websocket.send(json.dumps(payload))  # type: ignore[attr-defined]
        self._logger.info(
            "Subscribed to %dm candles: %s", self._interval, ", ".join(self._symbols)
        )

    def _handle_message(self, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return
        # Dict payloads are heartbeats and subscription status events.
        if not isinstance(data, list) or len(data) < 4:
            return
        channel = str(data[-2])
        if not channel.startswith("ohlc"):
            return
        payload = data[1]
        if not isinstance(payload, list) or len(payload) < 8:
            return
        native_pair = str(data[-1]).strip().upper()
        symbol = self._native_to_display.get(native_pair)
        if symbol is None:
            return
        try:
            candle = {
                "time": float(payload[1]),
                "open": float(payload[2]),
                "high": float(payload[3]),
                "low": float(payload[4]),
                "close": float(payload[5]),
                "volume": float(payload[7]),
            }
        except (TypeError, ValueError):
            return
        self._latest[symbol] = candle
        self._last_update[symbol] = self._clock()
        for callback in self._callbacks.get(symbol, []):
            try:
                callback(symbol, dict(candle))
            except Exception:  # noqa: BLE001 - subscriber bugs must not kill the feed
                self._logger.exception("Candle subscriber for %s failed", symbol)

    @staticmethod
    def _normalize_symbol(symbol: object) -> str | None:
        if symbol is None:
            return None
        text = str(symbol).strip().upper()
        if not text or "/" not in text:
            return None
        base, quote = text.split("/", 1)
        base = _NATIVE_TO_DISPLAY.get(base, base)
        quote = _NATIVE_TO_DISPLAY.get(quote, quote)
        return f"{base}/{quote}"

    @staticmethod
    def _map_to_native(symbol: str) -> str:
        base, quote = symbol.split("/", 1)
        return f"{_DISPLAY_TO_NATIVE.get(base, base)}/{_DISPLAY_TO_NATIVE.get(quote, quote)}"

    def _compute_backoff_delay(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        base_delay = min(self._max_retry_delay, self._base_retry_delay * (2**exponent))
        jitter = random.uniform(0, self._base_retry_delay)
        return min(self._max_retry_delay, base_delay + jitter)


__all__ = ["CandleStream", "KRAKEN_INTERVALS", "timeframe_to_minutes"]
