"""Shared-balance risk management: sizing, reservations and protective brackets."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Mapping, Protocol

from forecast_trader.services.errors import BracketError, ConfigError, InsufficientBalanceError
from forecast_trader.services.logging import get_logger
from forecast_trader.services.types import BracketLevels, BracketOrder, TradeSide


class BracketVenue(Protocol):
    async def place_bracket_order(
        self,
        symbol: str,
        side: TradeSide,
        size: float,
        take_profit_price: float,
        stop_loss_price: float,
    ) -> str: ...


@dataclass(frozen=True, slots=True)
class RiskConfig:
    """Process-wide risk parameters, validated once at startup."""

    risk_fraction: float = 0.01
    stop_loss_multiplier: float = 2.0
    take_profit_multiplier: float = 3.0

    def __post_init__(self) -> None:
        for name in ("risk_fraction", "stop_loss_multiplier", "take_profit_multiplier"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ConfigError(f"risk.{name} must be a finite number, got {value!r}")
        if not 0.0 < self.risk_fraction <= 1.0:
            raise ConfigError(f"risk.risk_fraction must be in (0, 1], got {self.risk_fraction}")
        if self.stop_loss_multiplier <= 0.0:
            raise ConfigError("risk.stop_loss_multiplier must be positive")
        if self.take_profit_multiplier <= 0.0:
            raise ConfigError("risk.take_profit_multiplier must be positive")
        if self.stop_loss_multiplier * self.risk_fraction >= 1.0:
            # A long stop at or below zero can never trigger.
            raise ConfigError(
                "risk.stop_loss_multiplier * risk.risk_fraction must be below 1"
            )
        if self.take_profit_multiplier * self.risk_fraction >= 1.0:
            # A short target at or below zero can never be placed.
            raise ConfigError(
                "risk.take_profit_multiplier * risk.risk_fraction must be below 1"
            )

    @classmethod
    def from_mapping(cls, config: Mapping[str, float | int | str | None] | None) -> "RiskConfig":
        payload = dict(config or {})
        # Accept the shorter legacy key used by older configuration files.
        if "risk_fraction" not in payload and "risk_per_trade" in payload:
            payload["risk_fraction"] = payload["risk_per_trade"]
        try:
            return cls(
                risk_fraction=float(payload.get("risk_fraction", 0.01)),
                stop_loss_multiplier=float(payload.get("stop_loss_multiplier", 2.0)),
                take_profit_multiplier=float(payload.get("take_profit_multiplier", 3.0)),
            )
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid risk configuration: {exc}") from exc


class RiskManager:
    """Sole owner of the free account balance.

    Every read-modify-write of the balance happens under one lock inside a
    section that never awaits, so concurrent symbol tasks can never observe
    the same pre-reservation balance.
    """

    def __init__(self, config: RiskConfig, exchange: BracketVenue) -> None:
        self._config = config
        self._exchange = exchange
        self._lock = threading.Lock()
        self._free_balance = 0.0
        self._reserved_total = 0.0
        self._logger = get_logger(__name__)

    @property
    def config(self) -> RiskConfig:
        return self._config

    @property
    def free_balance(self) -> float:
        with self._lock:
            return self._free_balance

    @property
    def reserved_total(self) -> float:
        with self._lock:
            return self._reserved_total

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------
    def sync_balance(self, free_balance: float) -> None:
        """Replace the balance snapshot at cycle start."""

        value = float(free_balance)
        if not math.isfinite(value) or value < 0.0:
            raise ValueError(f"Free balance must be a non-negative number, got {free_balance!r}")
        with self._lock:
            self._free_balance = value
            self._reserved_total = 0.0
        self._logger.info("[RISK] Balance snapshot synced: free=%.2f", value)

    def reserve(self, side: TradeSide) -> float:
        """Reserve ``min(free * risk_fraction, free)`` and return the amount."""

        with self._lock:
            free = self._free_balance
            size = min(free * self._config.risk_fraction, free)
            if size <= 0.0 or not math.isfinite(size):
                raise InsufficientBalanceError(free)
            self._free_balance = free - size
            self._reserved_total += size
            remaining = self._free_balance
        self._logger.info(
            "[RISK] Reserved %.2f for %s (free %.2f -> %.2f)",
            size,
            side.upper(),
            free,
            remaining,
        )
        return size

    def release(self, amount: float) -> None:
        """Return a reservation whose entry order did not go through."""

        value = float(amount)
        if value <= 0.0:
            return
        with self._lock:
            self._free_balance += value
            self._reserved_total = max(0.0, self._reserved_total - value)
            remaining = self._free_balance
        self._logger.info("[RISK] Released %.2f (free now %.2f)", value, remaining)

    # ------------------------------------------------------------------
    # Protective levels
    # ------------------------------------------------------------------
    def compute_bracket(self, side: TradeSide, entry_price: float) -> BracketLevels:
        entry = float(entry_price)
        if not math.isfinite(entry) or entry <= 0.0:
            raise ValueError(f"Entry price must be positive, got {entry_price!r}")
        cfg = self._config
        stop_offset = cfg.stop_loss_multiplier * cfg.risk_fraction
        target_offset = cfg.take_profit_multiplier * cfg.risk_fraction
        if side == "buy":
            return BracketLevels(
                stop_loss_price=entry * (1 - stop_offset),
                take_profit_price=entry * (1 + target_offset),
            )
        if side == "sell":
            return BracketLevels(
                stop_loss_price=entry * (1 + stop_offset),
                take_profit_price=entry * (1 - target_offset),
            )
        raise ValueError(f"Unknown side {side!r}")

    async def place_bracket(
        self,
        symbol: str,
        entry_price: float,
        size: float,
        side: TradeSide,
    ) -> BracketOrder:
        """Submit one linked stop-loss/take-profit pair for an open position.

        Either both legs are accepted or the call fails as a unit, raising
        :class:`BracketError`. There is no automatic retry.
        """

        levels = self.compute_bracket(side, entry_price)
        try:
            reference = await self._exchange.place_bracket_order(
                symbol,
                side,
                size,
                levels.take_profit_price,
                levels.stop_loss_price,
            )
        except Exception as exc:  # noqa: BLE001 - any venue failure leaves the position open
            self._logger.critical(
                "[RISK] UNPROTECTED %s %s size=%.8f entry=%.8f: bracket rejected (%s)",
                side.upper(),
                symbol,
                size,
                entry_price,
                exc,
            )
            raise BracketError(symbol, str(exc), levels=levels) from exc
        if not reference:
            self._logger.critical(
                "[RISK] UNPROTECTED %s %s: bracket acknowledged without an order reference",
                side.upper(),
                symbol,
            )
            raise BracketError(symbol, "no bracket order reference returned", levels=levels)
        self._logger.info(
            "[RISK] Bracket placed for %s %s: stop=%.8f target=%.8f ref=%s",
            side.upper(),
            symbol,
            levels.stop_loss_price,
            levels.take_profit_price,
            reference,
        )
        return BracketOrder(order_ref=str(reference), levels=levels)


__all__ = ["BracketVenue", "RiskConfig", "RiskManager"]
