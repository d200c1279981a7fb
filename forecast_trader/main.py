"""Runtime entry point for the forecast trading agent."""

from __future__ import annotations

import argparse
import asyncio
import signal
from pathlib import Path
from typing import Any, Dict, Sequence

from forecast_trader.runtime.bootstrap import (
    build_orchestrator,
    create_exchange,
    initialise_notifier,
    prepare_runtime_config,
)
from forecast_trader.services.configuration import normalize_config, read_config_file
from forecast_trader.services.errors import ConfigError
from forecast_trader.services.logging import configure_logging, get_logger

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"


def load_config(config_path: Path) -> Dict[str, Any]:
    logger = get_logger(__name__)
    if not config_path.exists():
        logger.warning("Config file %s not found; using built-in defaults", config_path)
    return read_config_file(config_path)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Forecast-driven trading agent")
    parser.add_argument(
        "--config",
        type=str,
        default=str(CONFIG_PATH),
        help="Path to configuration YAML file",
    )
    parser.add_argument(
        "--symbols",
        nargs="+",
        help="Market pairs to trade, overriding trading.symbols (e.g. BTC/USD ETH/USD)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        dest="interval_seconds",
        help="Seconds between analysis cycles",
    )
    parser.add_argument("--risk-fraction", type=float, dest="risk_fraction")
    parser.add_argument(
        "--live",
        action="store_true",
        help="Send real orders instead of simulating fills (requires API credentials)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single analysis cycle and exit",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        dest="log_level",
        help="Logging level (DEBUG, INFO, WARNING, ...)",
    )
    return parser.parse_args(argv)


def _apply_cli_overrides(config: Dict[str, Any], args: argparse.Namespace) -> None:
    trading_cfg = config.setdefault("trading", {})
    if args.symbols:
        symbols: list[str] = []
        for value in args.symbols:
            symbols.extend(part for part in value.split(",") if part.strip())
        trading_cfg["symbols"] = symbols
    if args.interval_seconds is not None:
        trading_cfg["interval_seconds"] = float(args.interval_seconds)
    if args.live:
        trading_cfg["paper_trading"] = False
        trading_cfg.pop("mode", None)
    if args.risk_fraction is not None:
        risk_cfg = config.setdefault("risk", {})
        risk_cfg["risk_fraction"] = float(args.risk_fraction)


def prepare_config(args: argparse.Namespace) -> Dict[str, Any]:
    config_path = Path(args.config).expanduser().resolve()
    config = load_config(config_path)
    _apply_cli_overrides(config, args)
    return normalize_config(config)


async def start_trading(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    logger = get_logger(__name__)
    bundle = prepare_runtime_config(config, logger=logger)
    exchange = create_exchange(bundle, logger=logger)
    notifier = initialise_notifier(bundle, logger=logger)
    orchestrator = build_orchestrator(bundle, exchange, notifier=notifier, stream=not args.once)

    try:
        await exchange.load_markets()
    except Exception as exc:  # noqa: BLE001 - market metadata is optional for paper sizing
        logger.warning("Failed to load %s market metadata: %s", exchange.exchange_name, exc)
    logger.info("Operating in %s trading mode", bundle.trading_mode)

    if args.once:
        try:
            await orchestrator.start(once=True)
        finally:
            await exchange.close()
        return

    if notifier is not None:
        await notifier.start()

    stop_event = asyncio.Event()

    def _shutdown(*_: int) -> None:
        logger.info("Shutdown signal received. Stopping agent...")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown, sig)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    agent_task = asyncio.create_task(orchestrator.start(), name="orchestrator")
    stop_task = asyncio.create_task(stop_event.wait(), name="stop-signal")
    try:
        await asyncio.wait({agent_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        await orchestrator.stop()
    try:
        await agent_task
    except Exception as exc:
        logger.exception("Orchestrator stopped unexpectedly")
        if notifier is not None:
            await notifier.send_error(exc)
        raise
    finally:
        if notifier is not None:
            await notifier.stop()
        await exchange.close()


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)
    logger = get_logger(__name__)
    try:
        config = prepare_config(args)
        asyncio.run(start_trading(args, config))
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(1) from exc
    except SystemExit:
        raise
    except Exception as exc:  # noqa: BLE001 - catch-all for a clean shutdown message
        print(f"Fatal error in trading agent: {exc}")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
