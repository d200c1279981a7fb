"""Exception hierarchy for per-symbol failures and startup validation."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for static type checking only
    from forecast_trader.services.types import BracketLevels, Position


class TradingError(Exception):
    """Base class for every error raised by the trading core."""


class ConfigError(TradingError):
    """Invalid configuration detected at startup. Fatal: no cycle runs."""


class FetchError(TradingError):
    """Market history was unavailable or too short to analyse."""

    def __init__(self, symbol: str, reason: str) -> None:
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class PredictionError(TradingError):
    """The predictive model failed or produced an unusable value."""

    def __init__(self, symbol: str, reason: str) -> None:
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class InsufficientBalanceError(TradingError):
    """No capital could be reserved; nothing was reserved."""

    def __init__(self, free_balance: float) -> None:
        super().__init__(f"insufficient free balance ({free_balance:.8f})")
        self.free_balance = free_balance


class OrderError(TradingError):
    """The entry order failed, was rejected, or reported no usable fill.

    The reservation has already been released when this is raised.
    """

    def __init__(self, symbol: str, reason: str, *, released: float = 0.0) -> None:
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason
        self.released = released


class BracketError(TradingError):
    """The protective bracket was rejected after a filled entry.

    The entry is open and unprotected. The executor attaches the
    :class:`Position` before the error leaves the symbol task.
    """

    def __init__(
        self,
        symbol: str,
        reason: str,
        *,
        levels: "BracketLevels | None" = None,
        position: "Position | None" = None,
    ) -> None:
        super().__init__(f"{symbol}: bracket rejected, position unprotected ({reason})")
        self.symbol = symbol
        self.reason = reason
        self.levels = levels
        self.position = position


__all__ = [
    "BracketError",
    "ConfigError",
    "FetchError",
    "InsufficientBalanceError",
    "OrderError",
    "PredictionError",
    "TradingError",
]
