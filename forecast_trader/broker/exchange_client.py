"""Exchange client wrapping ccxt for candles, balances, orders and brackets."""

from __future__ import annotations

import asyncio
import itertools
import math
import random
from typing import Any, Callable, Dict, List, Optional

import ccxt
from ccxt.base.errors import (
    DDoSProtection,
    ExchangeNotAvailable,
    NetworkError,
    RateLimitExceeded,
    RequestTimeout,
)

from forecast_trader.services.logging import get_logger
from forecast_trader.services.types import Fill, OrderReceipt, TradeSide


class ExchangeClient:
    """Thin async wrapper around a ccxt exchange.

    Read-only calls (markets, tickers, candles, balances) retry with
    exponential backoff on transient network errors. Order and bracket
    placement are sent exactly once: a retried market order could fill twice.

    In paper mode orders are filled locally at the last ticker price and
    brackets are recorded in memory; market data still comes from the venue.
    """

    def __init__(
        self,
        *,
        exchange_name: str = "kraken",
        api_key: str = "",
        api_secret: str = "",
        quote_asset: str = "USD",
        rest_rate_limit: float = 0.2,
        paper_trading: bool = True,
        paper_starting_balance: float = 10000.0,
        max_retries: int = 5,
        bracket_params: Optional[Dict[str, Any]] = None,
        exchange: Any | None = None,
    ) -> None:
        self._logger = get_logger(__name__)
        self._exchange_name = exchange_name
        self._quote_asset = quote_asset.upper()
        self._rest_rate_limit = max(0.0, float(rest_rate_limit))
        self._paper_trading = paper_trading
        self._paper_balances: Dict[str, float] = {self._quote_asset: float(paper_starting_balance)}
        self._paper_brackets: Dict[str, Dict[str, Any]] = {}
        self._paper_ids = itertools.count(1)
        self._bracket_params = dict(bracket_params or {})
        self._max_retries = max(1, int(max_retries))
        self._backoff_factor = 1.5
        if exchange is None:
            try:
                exchange_cls = getattr(ccxt, exchange_name)
            except AttributeError as exc:
                raise ValueError(f"Unsupported ccxt exchange: {exchange_name}") from exc
            exchange = exchange_cls(
                {
                    "apiKey": api_key,
                    "secret": api_secret,
                    "enableRateLimit": True,
                }
            )
        self._exchange = exchange

    @property
    def exchange_name(self) -> str:
        return self._exchange_name

    @property
    def quote_asset(self) -> str:
        return self._quote_asset

    @property
    def is_paper_trading(self) -> bool:
        return self._paper_trading

    @property
    def paper_brackets(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._paper_brackets)

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------
    async def load_markets(self) -> None:
        await self._with_retries(self._exchange.load_markets, description="load_markets")

    async def fetch_price(self, symbol: str) -> Optional[float]:
        ticker = await self._with_retries(
            self._exchange.fetch_ticker, symbol, description=f"fetch_ticker:{symbol}"
        )
        price = ticker.get("last") or ticker.get("close")
        return float(price) if price else None

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[List[float]]:
        rows = await self._with_retries(
            self._exchange.fetch_ohlcv,
            symbol,
            timeframe=interval,
            limit=int(limit),
            description=f"fetch_ohlcv:{symbol}",
        )
        return [list(row) for row in rows or []]

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------
    async def get_free_balance(self, asset: str) -> float:
        asset_key = asset.upper()
        if self._paper_trading:
            return max(0.0, float(self._paper_balances.get(asset_key, 0.0)))
        balance = await self._with_retries(self._exchange.fetch_balance, description="fetch_balance")
        free = (balance or {}).get("free") or {}
        value = free.get(asset_key)
        if value is None:
            value = (balance or {}).get(asset_key, {}).get("free", 0.0)
        return float(value or 0.0)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    async def place_market_order(self, symbol: str, side: TradeSide, size: float) -> OrderReceipt:
        """Buy or sell ``size`` worth of quote currency at market.

        The notional is converted to a base quantity at the last ticker price
        and rounded down to the venue's precision.
        """

        notional = float(size)
        if not math.isfinite(notional) or notional <= 0.0:
            raise ValueError(f"Order size must be positive, got {size!r}")
        price = await self.fetch_price(symbol)
        if price is None or price <= 0.0:
            raise RuntimeError(f"Unable to fetch price for {symbol}")
        amount = self._amount_to_precision(symbol, notional / price)
        if amount <= 0.0:
            raise RuntimeError(f"Order for {symbol} is below the venue minimum size")

        if self._paper_trading:
            self._simulate_fill(symbol, side, amount, price)
            order_id = f"paper-{next(self._paper_ids)}"
            return OrderReceipt(order_id=order_id, fills=(Fill(price=price, size=amount),))

        order = await asyncio.to_thread(
            self._exchange.create_order, symbol, "market", side, amount
        )
        return self._receipt_from_order(order)

    async def place_bracket_order(
        self,
        symbol: str,
        side: TradeSide,
        size: float,
        take_profit_price: float,
        stop_loss_price: float,
    ) -> str:
        """Submit one linked exit order protecting an open ``side`` position.

        The take-profit leg is a reduce-side limit order carrying an attached
        stop-loss trigger, so the venue accepts or rejects both legs together.
        Returns the venue order id.
        """

        exit_side: TradeSide = "sell" if side == "buy" else "buy"
        amount = self._amount_to_precision(symbol, float(size))
        if amount <= 0.0:
            raise RuntimeError(f"Bracket size for {symbol} is below the venue minimum")
        take_profit = self._price_to_precision(symbol, take_profit_price)
        stop_loss = self._price_to_precision(symbol, stop_loss_price)

        if self._paper_trading:
            reference = f"paper-bracket-{next(self._paper_ids)}"
            self._paper_brackets[reference] = {
                "symbol": symbol,
                "side": exit_side,
                "amount": amount,
                "take_profit_price": take_profit,
                "stop_loss_price": stop_loss,
            }
            return reference

        params: Dict[str, Any] = {
            **self._bracket_params,
            "stopLoss": {"triggerPrice": stop_loss, "type": "market"},
        }
        order = await asyncio.to_thread(
            self._exchange.create_order,
            symbol,
            "limit",
            exit_side,
            amount,
            take_profit,
            params,
        )
        reference = (order or {}).get("id")
        if not reference:
            raise RuntimeError(f"Bracket order for {symbol} returned no id")
        return str(reference)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _receipt_from_order(self, order: Dict[str, Any] | None) -> OrderReceipt:
        """Translate a ccxt order into fills, preferring per-trade detail."""

        order = order or {}
        fills: List[Fill] = []
        for trade in order.get("trades") or []:
            price = trade.get("price")
            amount = trade.get("amount")
            if price is None or amount is None:
                continue
            fills.append(Fill(price=float(price), size=float(amount)))
        if not fills:
            filled = order.get("filled")
            average = order.get("average") or order.get("price")
            if filled and average:
                fills.append(Fill(price=float(average), size=float(filled)))
        return OrderReceipt(order_id=str(order.get("id") or ""), fills=tuple(fills))

    def _amount_to_precision(self, symbol: str, amount: float) -> float:
        market = (getattr(self._exchange, "markets", None) or {}).get(symbol)
        if not market:
            return float(amount)
        min_amount = ((market.get("limits") or {}).get("amount") or {}).get("min") or 0.0
        if min_amount and amount < float(min_amount):
            return 0.0
        return float(self._exchange.amount_to_precision(symbol, amount))

    def _price_to_precision(self, symbol: str, price: float) -> float:
        market = (getattr(self._exchange, "markets", None) or {}).get(symbol)
        if not market:
            return float(price)
        return float(self._exchange.price_to_precision(symbol, price))

    def _simulate_fill(self, symbol: str, side: TradeSide, amount: float, price: float) -> None:
        base, quote = symbol.split("/", 1)
        cost = amount * price
        balances = self._paper_balances
        balances.setdefault(base, 0.0)
        balances.setdefault(quote, 0.0)
        if side == "buy":
            if balances[quote] < cost:
                raise RuntimeError("Insufficient paper balance")
            balances[quote] -= cost
            balances[base] += amount
        else:
            # Paper sells may open a short; the base balance goes negative.
            balances[base] -= amount
            balances[quote] += cost

    async def _with_retries(
        self,
        func: Callable[..., Any],
        *args: object,
        description: str,
        **kwargs: object,
    ) -> Any:
        """Execute a blocking ccxt read with retry and exponential backoff."""

        delay = max(self._rest_rate_limit, 0.2)
        for attempt in range(1, self._max_retries + 1):
            try:
                result = await asyncio.to_thread(func, *args, **kwargs)
                if self._rest_rate_limit:
                    await asyncio.sleep(self._rest_rate_limit)
                return result
            except ccxt.BaseError as exc:
                if not self._should_retry(exc) or attempt == self._max_retries:
                    self._logger.error(
                        "%s %s failed after %d attempts: %s",
                        self._exchange_name,
                        description,
                        attempt,
                        exc,
                    )
                    raise
                sleep_for = self._backoff_delay(delay, attempt)
                self._logger.warning(
                    "%s %s retry %d/%d in %.2fs due to %s",
                    self._exchange_name,
                    description,
                    attempt,
                    self._max_retries,
                    sleep_for,
                    exc,
                )
                await asyncio.sleep(sleep_for)
        raise RuntimeError(f"{description} exhausted retries")  # pragma: no cover

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        retryable = (
            NetworkError,
            DDoSProtection,
            RateLimitExceeded,
            RequestTimeout,
            ExchangeNotAvailable,
        )
        return isinstance(exc, retryable)

    def _backoff_delay(self, base_delay: float, attempt: int) -> float:
        exponent = self._backoff_factor ** (attempt - 1)
        jitter = random.uniform(0, base_delay)
        return min(20.0, base_delay * exponent + jitter)

    async def close(self) -> None:
        closer = getattr(self._exchange, "close", None)
        if callable(closer):
            result = closer()
            if asyncio.iscoroutine(result):
                await result


__all__ = ["ExchangeClient"]
