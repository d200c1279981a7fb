"""Forecast-to-decision rule."""

from __future__ import annotations

from forecast_trader.services.types import Decision, PriceWindow


def decide(window: PriceWindow, predicted_price: float) -> Decision:
    """Compare the forecast against the latest close.

    Buy when the forecast is above the last close, sell when below, and do
    nothing on an exact match. No confidence margin or transaction-cost
    filter is applied.
    """

    last_close = window.last_close
    if predicted_price > last_close:
        return Decision.BUY
    if predicted_price < last_close:
        return Decision.SELL
    return Decision.NO_ACTION


__all__ = ["decide"]
