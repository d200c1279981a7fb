"""Runtime bootstrap utilities for the trading agent."""

from forecast_trader.runtime.bootstrap import (
    RuntimeConfigBundle,
    build_orchestrator,
    create_exchange,
    initialise_notifier,
    prepare_runtime_config,
)

__all__ = [
    "RuntimeConfigBundle",
    "build_orchestrator",
    "create_exchange",
    "initialise_notifier",
    "prepare_runtime_config",
]
