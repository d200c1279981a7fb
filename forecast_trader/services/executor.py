"""Entry-order execution with bracket hand-off on confirmed fills."""

from __future__ import annotations

import math
from typing import Protocol

from forecast_trader.services.errors import BracketError, OrderError
from forecast_trader.services.logging import get_logger
from forecast_trader.services.risk_manager import RiskManager
from forecast_trader.services.types import FillResult, OrderReceipt, Position, TradeSide


class OrderVenue(Protocol):
    async def place_market_order(self, symbol: str, side: TradeSide, size: float) -> OrderReceipt: ...


class OrderExecutor:
    """Place the entry order for a reservation and protect the resulting fill."""

    def __init__(self, exchange: OrderVenue, risk_manager: RiskManager) -> None:
        self._exchange = exchange
        self._risk_manager = risk_manager
        self._logger = get_logger(__name__)

    async def execute(self, symbol: str, side: TradeSide, size: float) -> Position:
        """Submit a market order for ``size`` and bracket the fill.

        Raises :class:`OrderError` when the entry failed or reported no usable
        fill (the reservation is released first), and :class:`BracketError`
        with the open position attached when protection could not be placed.
        """

        self._logger.info(
            "[TRADE] Submitting %s market order for %s size=%.2f", side.upper(), symbol, size
        )
        try:
            receipt = await self._exchange.place_market_order(symbol, side, size)
        except Exception as exc:  # noqa: BLE001 - any venue failure is an order failure
            self._risk_manager.release(size)
            self._logger.error(
                "[TRADE] Order rejected for %s %s (size %.2f): %s", side.upper(), symbol, size, exc
            )
            raise OrderError(symbol, f"entry order failed: {exc}", released=size) from exc

        fill = self._extract_fill(receipt)
        if fill is None:
            self._risk_manager.release(size)
            self._logger.error(
                "[TRADE] Order %s for %s reported no usable fill; reservation released",
                getattr(receipt, "order_id", "?"),
                symbol,
            )
            raise OrderError(symbol, "order reported no usable fill", released=size)

        position = Position(
            symbol=symbol,
            side=side,
            size=fill.size,
            entry_price=fill.entry_price,
            cost=size,
        )
        self._logger.info(
            "[TRADE] Filled %s %s qty=%.8f @ %.8f order=%s",
            side.upper(),
            symbol,
            fill.size,
            fill.entry_price,
            fill.order_id,
        )

        try:
            bracket = await self._risk_manager.place_bracket(
                symbol, fill.entry_price, fill.size, side
            )
        except BracketError as exc:
            position.levels = exc.levels
            exc.position = position
            raise
        position.levels = bracket.levels
        position.bracket_order_ref = bracket.order_ref
        return position

    @staticmethod
    def _extract_fill(receipt: OrderReceipt | None) -> FillResult | None:
        """Return the first fill's price with the total filled size.

        ``None`` means the order cannot safely be bracketed: no fills, a
        non-positive total size, or a zero/undefined entry price.
        """

        if receipt is None or not receipt.fills:
            return None
        try:
            entry_price = float(receipt.fills[0].price)
            filled = sum(float(fill.size) for fill in receipt.fills)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(entry_price) or entry_price <= 0.0:
            return None
        if not math.isfinite(filled) or filled <= 0.0:
            return None
        return FillResult(order_id=str(receipt.order_id), size=filled, entry_price=entry_price)


__all__ = ["OrderExecutor", "OrderVenue"]
