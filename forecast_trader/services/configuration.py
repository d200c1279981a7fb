"""Utilities for loading, normalising and validating agent configuration."""

from __future__ import annotations

import math
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Tuple

import yaml

from forecast_trader.services.errors import ConfigError
from forecast_trader.services.logging import get_logger
from forecast_trader.services.risk_manager import RiskConfig

_SYMBOL_ALIASES: Dict[str, str] = {"XBT": "BTC", "XETH": "ETH", "XDG": "DOGE"}

_TRADING_DEFAULTS: Dict[str, Any] = {
    "quote_asset": "USD",
    "interval_seconds": 300,
    "timeframe": "5m",
    "lookback": 100,
    "paper_trading": True,
    "paper_starting_balance": 10000.0,
    "shutdown_grace_seconds": 10.0,
}

_PREDICTION_DEFAULTS: Dict[str, Any] = {
    "window": 10,
    "learning_rate": 0.01,
    "regularization": 0.0005,
    "epochs": 3,
    "fit_on_history": True,
}

_EXCHANGE_DEFAULTS: Dict[str, Any] = {
    "name": "kraken",
    "rest_rate_limit": 0.2,
    "max_retries": 5,
}


@dataclass(frozen=True, slots=True)
class Settings:
    """Validated runtime settings for one agent process."""

    symbols: Tuple[str, ...]
    quote_asset: str
    interval_seconds: float
    timeframe: str
    lookback: int
    paper_trading: bool
    paper_starting_balance: float
    shutdown_grace_seconds: float
    risk: RiskConfig
    prediction_window: int
    learning_rate: float
    regularization: float
    epochs: int
    fit_on_history: bool
    exchange_name: str
    rest_rate_limit: float
    max_retries: int


def read_config_file(path: Path) -> Dict[str, Any]:
    """Return a dictionary representation of the YAML configuration file."""

    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as handle:
        try:
            payload = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Configuration at {path} is not valid YAML: {exc}") from exc
    if not isinstance(payload, MutableMapping):
        raise ConfigError(f"Configuration at {path} must be a mapping")
    return dict(payload)


def normalize_symbol(candidate: object) -> str | None:
    if candidate is None:
        return None
    text = str(candidate).strip().upper()
    if not text or "/" not in text:
        return None
    base, quote = text.split("/", 1)
    if not base or not quote:
        return None
    base = _SYMBOL_ALIASES.get(base, base)
    quote = _SYMBOL_ALIASES.get(quote, quote)
    return f"{base}/{quote}"


def _coerce(section: str, key: str, value: Any, kind: type) -> Any:
    if kind is bool:
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{section}.{key} must be {kind.__name__}, got {value!r}") from exc


def normalize_config(config: Mapping[str, Any]) -> Dict[str, Any]:
    """Fill defaults, coerce numeric values and de-duplicate symbols."""

    logger = get_logger(__name__)
    normalised: Dict[str, Any] = deepcopy(dict(config))

    trading_cfg: Dict[str, Any] = dict(normalised.get("trading") or {})
    for key, default_value in _TRADING_DEFAULTS.items():
        trading_cfg.setdefault(key, default_value)
    trading_mode = str(trading_cfg.get("mode", "")).strip().lower()
    if trading_mode in {"paper", "live"}:
        trading_cfg["paper_trading"] = trading_mode != "live"
    trading_cfg["paper_trading"] = _coerce(
        "trading", "paper_trading", trading_cfg["paper_trading"], bool
    )
    trading_cfg["quote_asset"] = str(trading_cfg["quote_asset"]).strip().upper()
    trading_cfg["timeframe"] = str(trading_cfg["timeframe"]).strip()
    for key in ("interval_seconds", "paper_starting_balance", "shutdown_grace_seconds"):
        trading_cfg[key] = _coerce("trading", key, trading_cfg[key], float)
    trading_cfg["lookback"] = _coerce("trading", "lookback", trading_cfg["lookback"], int)

    raw_symbols = trading_cfg.get("symbols") or []
    if isinstance(raw_symbols, str):
        raw_symbols = raw_symbols.split(",")
    symbols: list[str] = []
    if isinstance(raw_symbols, (list, tuple, set)):
        for candidate in raw_symbols:
            symbol = normalize_symbol(candidate)
            if symbol is None:
                logger.warning("Ignoring malformed trading symbol: %s", candidate)
                continue
            if symbol not in symbols:
                symbols.append(symbol)
    else:
        logger.warning(
            "Trading symbols must be a sequence; received %s", type(raw_symbols).__name__
        )
    trading_cfg["symbols"] = symbols
    normalised["trading"] = trading_cfg

    prediction_cfg: Dict[str, Any] = dict(normalised.get("prediction") or {})
    for key, default_value in _PREDICTION_DEFAULTS.items():
        prediction_cfg.setdefault(key, default_value)
    prediction_cfg["window"] = _coerce("prediction", "window", prediction_cfg["window"], int)
    prediction_cfg["epochs"] = _coerce("prediction", "epochs", prediction_cfg["epochs"], int)
    for key in ("learning_rate", "regularization"):
        prediction_cfg[key] = _coerce("prediction", key, prediction_cfg[key], float)
    prediction_cfg["fit_on_history"] = _coerce(
        "prediction", "fit_on_history", prediction_cfg["fit_on_history"], bool
    )
    normalised["prediction"] = prediction_cfg

    exchange_cfg: Dict[str, Any] = dict(normalised.get("exchange") or {})
    for key, default_value in _EXCHANGE_DEFAULTS.items():
        exchange_cfg.setdefault(key, default_value)
    exchange_cfg["name"] = str(exchange_cfg["name"]).strip().lower()
    exchange_cfg["rest_rate_limit"] = _coerce(
        "exchange", "rest_rate_limit", exchange_cfg["rest_rate_limit"], float
    )
    exchange_cfg["max_retries"] = _coerce("exchange", "max_retries", exchange_cfg["max_retries"], int)
    normalised["exchange"] = exchange_cfg

    risk_cfg: Dict[str, Any] = dict(normalised.get("risk") or {})
    if "risk_per_trade" in risk_cfg and "risk_fraction" not in risk_cfg:
        logger.warning("Deprecated risk key 'risk_per_trade' detected; prefer 'risk_fraction'.")
        risk_cfg["risk_fraction"] = risk_cfg.pop("risk_per_trade")
    normalised["risk"] = risk_cfg

    normalised.setdefault("notifications", {})
    return normalised


def load_settings(config: Mapping[str, Any]) -> Settings:
    """Validate a configuration mapping, raising :class:`ConfigError` on the first problem."""

    normalised = normalize_config(config)
    trading_cfg = normalised["trading"]
    prediction_cfg = normalised["prediction"]
    exchange_cfg = normalised["exchange"]

    symbols = tuple(trading_cfg["symbols"])
    if not symbols:
        raise ConfigError("trading.symbols must list at least one market pair")
    interval = trading_cfg["interval_seconds"]
    if not math.isfinite(interval) or interval <= 0:
        raise ConfigError(f"trading.interval_seconds must be positive, got {interval}")
    window = prediction_cfg["window"]
    if window <= 0:
        raise ConfigError(f"prediction.window must be positive, got {window}")
    lookback = trading_cfg["lookback"]
    if lookback < window:
        raise ConfigError(
            f"trading.lookback ({lookback}) must be at least prediction.window ({window})"
        )
    if trading_cfg["shutdown_grace_seconds"] < 0:
        raise ConfigError("trading.shutdown_grace_seconds must not be negative")
    if trading_cfg["paper_trading"] and trading_cfg["paper_starting_balance"] < 0:
        raise ConfigError("trading.paper_starting_balance must not be negative")
    if not trading_cfg["quote_asset"]:
        raise ConfigError("trading.quote_asset must not be empty")
    for symbol in symbols:
        if symbol.split("/", 1)[1] != trading_cfg["quote_asset"]:
            raise ConfigError(
                f"{symbol} is not quoted in {trading_cfg['quote_asset']}; "
                "every symbol must share the balance currency"
            )

    risk = RiskConfig.from_mapping(normalised["risk"])

    return Settings(
        symbols=symbols,
        quote_asset=trading_cfg["quote_asset"],
        interval_seconds=interval,
        timeframe=trading_cfg["timeframe"],
        lookback=lookback,
        paper_trading=trading_cfg["paper_trading"],
        paper_starting_balance=trading_cfg["paper_starting_balance"],
        shutdown_grace_seconds=trading_cfg["shutdown_grace_seconds"],
        risk=risk,
        prediction_window=window,
        learning_rate=prediction_cfg["learning_rate"],
        regularization=prediction_cfg["regularization"],
        epochs=prediction_cfg["epochs"],
        fit_on_history=prediction_cfg["fit_on_history"],
        exchange_name=exchange_cfg["name"],
        rest_rate_limit=exchange_cfg["rest_rate_limit"],
        max_retries=exchange_cfg["max_retries"],
    )


__all__ = ["Settings", "load_settings", "normalize_config", "normalize_symbol", "read_config_file"]
