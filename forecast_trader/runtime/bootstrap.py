"""Helpers for wiring the trading runtime from configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass
from logging import Logger
from typing import Any, Callable, Dict, Mapping

from forecast_trader.broker.candle_stream import CandleStream
from forecast_trader.broker.exchange_client import ExchangeClient
from forecast_trader.notifier import Notifier
from forecast_trader.services.configuration import Settings, load_settings
from forecast_trader.services.executor import OrderExecutor
from forecast_trader.services.logging import get_logger
from forecast_trader.services.market_data import MarketDataPort
from forecast_trader.services.monitoring import get_monitoring_center
from forecast_trader.services.orchestrator import Orchestrator
from forecast_trader.services.prediction import PredictionPort, PriceModel, WindowRegressor
from forecast_trader.services.risk_manager import RiskManager


@dataclass(frozen=True)
class RuntimeConfigBundle:
    """Validated settings plus the raw sections that carry credentials."""

    config: Dict[str, Any]
    settings: Settings
    trading_mode: str


def prepare_runtime_config(config: Dict[str, Any], *, logger: Logger) -> RuntimeConfigBundle:
    """Validate configuration and derive runtime metadata.

    Raises :class:`~forecast_trader.services.errors.ConfigError` when the
    configuration cannot be run.
    """

    settings = load_settings(config)
    trading_mode = "PAPER" if settings.paper_trading else "LIVE"
    logger.info("Tracking markets: %s", ", ".join(settings.symbols))
    logger.info(
        "Cycle every %.0fs on %s candles (lookback %d, model window %d)",
        settings.interval_seconds,
        settings.timeframe,
        settings.lookback,
        settings.prediction_window,
    )
    return RuntimeConfigBundle(config=dict(config), settings=settings, trading_mode=trading_mode)


def create_exchange(bundle: RuntimeConfigBundle, *, logger: Logger) -> ExchangeClient:
    """Instantiate the ccxt exchange client from configuration and env vars."""

    settings = bundle.settings
    exchange_cfg = bundle.config.get("exchange") or {}

    env_api_key = os.getenv("EXCHANGE_API_KEY", "").strip()
    env_api_secret = os.getenv("EXCHANGE_API_SECRET", "").strip()
    api_key = env_api_key or str(exchange_cfg.get("api_key", "")).strip()
    api_secret = env_api_secret or str(exchange_cfg.get("api_secret", "")).strip()

    if not settings.paper_trading and (not api_key or not api_secret):
        logger.error(
            "Live trading requires exchange API credentials via EXCHANGE_API_KEY/"
            "EXCHANGE_API_SECRET or the exchange section of the config."
        )
        raise SystemExit(1)

    return ExchangeClient(
        exchange_name=settings.exchange_name,
        api_key=api_key,
        api_secret=api_secret,
        quote_asset=settings.quote_asset,
        rest_rate_limit=settings.rest_rate_limit,
        paper_trading=settings.paper_trading,
        paper_starting_balance=settings.paper_starting_balance,
        max_retries=settings.max_retries,
        bracket_params=dict(exchange_cfg.get("bracket_params") or {}),
    )


def initialise_notifier(bundle: RuntimeConfigBundle, *, logger: Logger) -> Notifier | None:
    """Attempt to build the Telegram notifier, falling back gracefully on failure."""

    telegram_cfg = (bundle.config.get("notifications") or {}).get("telegram") or {}
    telegram_token = (
        os.getenv("TELEGRAM_TOKEN", "").strip() or str(telegram_cfg.get("bot_token", "")).strip()
    )
    telegram_chat_id = (
        os.getenv("TELEGRAM_CHAT_ID", "").strip() or str(telegram_cfg.get("chat_id", "")).strip()
    )
    telegram_enabled = bool(telegram_cfg.get("enabled", True))

    if not (telegram_enabled and telegram_token and telegram_chat_id):
        logger.info("Telegram notifier disabled; configure notifications.telegram or env vars")
        return None

    try:
        notifier = Notifier(token=telegram_token, chat_id=telegram_chat_id)
    except Exception as exc:  # noqa: BLE001 - network/setup issues should not abort startup
        logger.warning("Failed to initialise Telegram notifier: %s", exc)
        return None

    logger.info("Telegram notifier enabled for chat %s", telegram_chat_id)
    return notifier


def _default_model_factory(settings: Settings) -> Callable[[], PriceModel]:
    def factory() -> PriceModel:
        return WindowRegressor(
            settings.prediction_window,
            learning_rate=settings.learning_rate,
            regularization=settings.regularization,
            epochs=settings.epochs,
        )

    return factory


def _log_candle_update(symbol: str, candle: Mapping[str, float]) -> None:
    get_logger(__name__).debug("Candle update %s close=%.8f", symbol, candle["close"])


def build_orchestrator(
    bundle: RuntimeConfigBundle,
    exchange: ExchangeClient,
    *,
    notifier: Notifier | None = None,
    model_factory: Callable[[], PriceModel] | None = None,
    stream: bool = True,
) -> Orchestrator:
    """Assemble the analysis pipeline around one exchange client."""

    settings = bundle.settings
    factory = model_factory or _default_model_factory(settings)
    monitoring_center = get_monitoring_center()
    risk_manager = RiskManager(settings.risk, exchange)
    candle_stream = None
    if stream and settings.exchange_name == "kraken":
        try:
            candle_stream = CandleStream(
                list(settings.symbols),
                settings.timeframe,
                monitoring_center=monitoring_center,
            )
        except ValueError as exc:
            get_logger(__name__).warning("Candle stream disabled: %s", exc)
        else:
            for symbol in settings.symbols:
                candle_stream.subscribe_candles(symbol, _log_candle_update)
    return Orchestrator(
        exchange=exchange,
        market_data=MarketDataPort(
            exchange, lookback=settings.lookback, timeframe=settings.timeframe
        ),
        prediction=PredictionPort(
            factory,
            window_size=settings.prediction_window,
            fit_on_history=settings.fit_on_history,
        ),
        risk_manager=risk_manager,
        executor=OrderExecutor(exchange, risk_manager),
        symbols=settings.symbols,
        quote_asset=settings.quote_asset,
        interval_seconds=settings.interval_seconds,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
        monitoring_center=monitoring_center,
        notifier=notifier,
        candle_stream=candle_stream,
    )


__all__ = [
    "RuntimeConfigBundle",
    "build_orchestrator",
    "create_exchange",
    "initialise_notifier",
    "prepare_runtime_config",
]
