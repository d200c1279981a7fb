from __future__ import annotations

import asyncio
import logging
import math
from types import SimpleNamespace
from typing import Sequence
from unittest.mock import AsyncMock

import pytest

from forecast_trader.services.executor import OrderExecutor
from forecast_trader.services.market_data import MarketDataPort
from forecast_trader.services.monitoring import get_monitoring_center
from forecast_trader.services.orchestrator import Orchestrator, SymbolAnalysis
from forecast_trader.services.prediction import PredictionPort
from forecast_trader.services.risk_manager import RiskConfig, RiskManager
from forecast_trader.services.types import CycleState, Outcome
from tests.fakes import FakeExchange, FixedModel, make_candles

NAN_MARKER = 7.0


def _trend_model(closes: Sequence[float]) -> float:
    if closes[-1] == NAN_MARKER:
        return math.nan
    return closes[-1] * 1.05


def _build(
    exchange: FakeExchange,
    symbols: Sequence[str],
    *,
    model=_trend_model,
    market_data=None,
    notifier=None,
    interval_seconds: float = 300.0,
    grace: float = 1.0,
) -> tuple[Orchestrator, RiskManager]:
    risk_manager = RiskManager(RiskConfig(), exchange)
    orchestrator = Orchestrator(
        exchange=exchange,
        market_data=market_data or MarketDataPort(exchange, lookback=20),
        prediction=PredictionPort(lambda: FixedModel(model), window_size=10),
        risk_manager=risk_manager,
        executor=OrderExecutor(exchange, risk_manager),
        symbols=symbols,
        quote_asset="USD",
        interval_seconds=interval_seconds,
        shutdown_grace_seconds=grace,
        monitoring_center=get_monitoring_center(),
        notifier=notifier,
    )
    return orchestrator, risk_manager


def _history(last: float, count: int = 20) -> list[list[float]]:
    return make_candles([last] * count)


def test_buy_signal_is_sized_filled_and_bracketed() -> None:
    exchange = FakeExchange(
        balance=10_000.0,
        candles={"BTC/USD": _history(100.0)},
        fill_prices={"BTC/USD": 100.0},
    )
    orchestrator, risk_manager = _build(exchange, ["BTC/USD"])

    report = asyncio.run(orchestrator.run_cycle())

    outcome = report.by_symbol()["BTC/USD"]
    assert outcome.outcome is Outcome.EXECUTED_PROTECTED
    assert outcome.state is CycleState.BRACKET_PLACED
    assert exchange.balance_requests == ["USD"]
    assert exchange.market_orders == [("BTC/USD", "buy", pytest.approx(100.0))]
    assert exchange.brackets[0]["stop_loss_price"] == pytest.approx(98.0)
    assert exchange.brackets[0]["take_profit_price"] == pytest.approx(103.0)
    assert outcome.position is not None and outcome.position.protected
    assert risk_manager.free_balance == pytest.approx(9_900.0)


def test_failures_are_isolated_per_symbol() -> None:
    exchange = FakeExchange(
        candles={
            "BTC/USD": _history(100.0),
            "ETH/USD": make_candles([50.0] * 5),
            "SOL/USD": _history(NAN_MARKER),
            "ADA/USD": ConnectionError("timeout"),
        },
    )
    orchestrator, _ = _build(exchange, ["BTC/USD", "ETH/USD", "SOL/USD", "ADA/USD"])

    report = asyncio.run(orchestrator.run_cycle())

    outcomes = {symbol: result.outcome for symbol, result in report.by_symbol().items()}
    assert outcomes == {
        "BTC/USD": Outcome.EXECUTED_PROTECTED,
        "ETH/USD": Outcome.FETCH_FAILED,
        "SOL/USD": Outcome.PREDICT_FAILED,
        "ADA/USD": Outcome.FETCH_FAILED,
    }
    assert [order[0] for order in exchange.market_orders] == ["BTC/USD"]


def test_unexpected_task_exception_becomes_failed_outcome() -> None:
    exchange = FakeExchange(candles={"BTC/USD": _history(100.0)})
    real_port = MarketDataPort(exchange, lookback=20)

    async def _fetch(symbol: str):
        if symbol == "ETH/USD":
            raise KeyError("bug in adapter")
        return await real_port.fetch_window(symbol)

    market_data = SimpleNamespace(fetch_window=_fetch)
    orchestrator, _ = _build(exchange, ["BTC/USD", "ETH/USD"], market_data=market_data)

    report = asyncio.run(orchestrator.run_cycle())

    eth = report.by_symbol()["ETH/USD"]
    assert eth.outcome is Outcome.FAILED
    assert eth.state is CycleState.FAILED
    assert "bug in adapter" in (eth.detail or "")
    assert report.by_symbol()["BTC/USD"].outcome is Outcome.EXECUTED_PROTECTED


def test_equal_forecast_takes_no_action() -> None:
    exchange = FakeExchange(candles={"BTC/USD": _history(100.0)})
    orchestrator, risk_manager = _build(exchange, ["BTC/USD"], model=100.0)

    report = asyncio.run(orchestrator.run_cycle())

    assert report.outcomes[0].outcome is Outcome.NO_ACTION
    assert report.outcomes[0].state is CycleState.NO_ACTION
    assert exchange.market_orders == []
    assert risk_manager.reserved_total == 0.0


def test_empty_balance_skips_with_insufficient_balance() -> None:
    exchange = FakeExchange(balance=0.0, candles={"BTC/USD": _history(100.0)})
    orchestrator, _ = _build(exchange, ["BTC/USD"])

    report = asyncio.run(orchestrator.run_cycle())

    assert report.outcomes[0].outcome is Outcome.INSUFFICIENT_BALANCE
    assert exchange.market_orders == []


def test_order_failure_releases_and_reports() -> None:
    exchange = FakeExchange(
        candles={"BTC/USD": _history(100.0)},
        order_errors={"BTC/USD": RuntimeError("rejected")},
    )
    orchestrator, risk_manager = _build(exchange, ["BTC/USD"])

    report = asyncio.run(orchestrator.run_cycle())

    assert report.outcomes[0].outcome is Outcome.ORDER_FAILED
    assert exchange.brackets == []
    assert risk_manager.free_balance == pytest.approx(10_000.0)


def test_balance_refresh_failure_fails_every_symbol() -> None:
    exchange = FakeExchange(
        balance=ConnectionError("balance endpoint down"),
        candles={"BTC/USD": _history(100.0), "ETH/USD": _history(50.0)},
    )
    orchestrator, _ = _build(exchange, ["BTC/USD", "ETH/USD"])

    report = asyncio.run(orchestrator.run_cycle())

    assert [outcome.outcome for outcome in report.outcomes] == [
        Outcome.FETCH_FAILED,
        Outcome.FETCH_FAILED,
    ]
    assert all("balance" in (outcome.detail or "") for outcome in report.outcomes)
    assert exchange.market_orders == []


def test_concurrent_buys_share_the_snapshot() -> None:
    symbols = ["BTC/USD", "ETH/USD", "SOL/USD"]
    exchange = FakeExchange(
        balance=10_000.0,
        candles={symbol: _history(100.0) for symbol in symbols},
    )
    orchestrator, risk_manager = _build(exchange, symbols)

    report = asyncio.run(orchestrator.run_cycle())

    sizes = sorted((order[2] for order in exchange.market_orders), reverse=True)
    assert sizes == pytest.approx([100.0, 99.0, 98.01])
    assert sum(sizes) <= 10_000.0
    assert risk_manager.free_balance == pytest.approx(10_000.0 - sum(sizes))
    assert all(outcome.outcome is Outcome.EXECUTED_PROTECTED for outcome in report.outcomes)


def test_bracket_rejection_is_critical_and_alerts() -> None:
    exchange = FakeExchange(
        candles={"BTC/USD": _history(100.0)},
        bracket_errors={"BTC/USD": RuntimeError("stop price rejected")},
    )
    notifier = SimpleNamespace(send_unprotected_alert=AsyncMock())
    orchestrator, _ = _build(exchange, ["BTC/USD"], notifier=notifier)

    report = asyncio.run(orchestrator.run_cycle())

    outcome = report.outcomes[0]
    assert outcome.outcome is Outcome.EXECUTED_UNPROTECTED
    assert outcome.state is CycleState.UNPROTECTED
    assert outcome.position is not None and not outcome.position.protected
    notifier.send_unprotected_alert.assert_awaited_once()
    symbol, position, reason = notifier.send_unprotected_alert.await_args.args
    assert symbol == "BTC/USD"
    assert position is outcome.position
    assert "stop price rejected" in reason
    events = get_monitoring_center().recent_events(event_type="symbol_outcome")
    assert events[0]["severity"] == "CRITICAL"
    assert events[0]["message"] == "executed_unprotected"


def test_notifier_failure_does_not_break_cycle() -> None:
    exchange = FakeExchange(
        candles={"BTC/USD": _history(100.0)},
        bracket_errors={"BTC/USD": RuntimeError("no")},
    )
    notifier = SimpleNamespace(send_unprotected_alert=AsyncMock(side_effect=RuntimeError("tg")))
    orchestrator, _ = _build(exchange, ["BTC/USD"], notifier=notifier)

    report = asyncio.run(orchestrator.run_cycle())

    assert report.outcomes[0].outcome is Outcome.EXECUTED_UNPROTECTED


def test_one_outcome_event_per_symbol() -> None:
    symbols = ["BTC/USD", "ETH/USD"]
    exchange = FakeExchange(candles={"BTC/USD": _history(100.0)})
    orchestrator, _ = _build(exchange, symbols)

    report = asyncio.run(orchestrator.run_cycle())

    events = get_monitoring_center().recent_events(event_type="symbol_outcome")
    assert sorted(event["symbol"] for event in events) == symbols
    assert {event["cycle_id"] for event in events} == {report.cycle_id}
    by_symbol = {event["symbol"]: event for event in events}
    assert by_symbol["ETH/USD"]["metadata"]["outcome"] == "fetch_failed"
    assert by_symbol["ETH/USD"]["severity"] == "WARNING"


class GatedExchange(FakeExchange):
    """Hold candle requests until the test opens the gate."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def get_candles(self, symbol: str, interval: str, limit: int):
        self.entered.set()
        await self.gate.wait()
        return await super().get_candles(symbol, interval, limit)


def test_overlapping_cycle_is_skipped(caplog: pytest.LogCaptureFixture) -> None:
    symbols = ["BTC/USD", "ETH/USD"]
    exchange = GatedExchange(candles={symbol: _history(100.0) for symbol in symbols})
    orchestrator, _ = _build(exchange, symbols)

    async def _scenario():
        first = asyncio.create_task(orchestrator.run_cycle())
        await exchange.entered.wait()
        assert orchestrator.cycle_in_flight
        skipped = await orchestrator.run_cycle()
        exchange.gate.set()
        completed = await first
        return skipped, completed

    with caplog.at_level(logging.WARNING):
        skipped, completed = asyncio.run(_scenario())

    assert skipped.skipped
    assert skipped.cycle_id == 2
    assert [outcome.outcome for outcome in skipped.outcomes] == [Outcome.SKIPPED_CYCLE] * 2
    assert not completed.skipped
    assert completed.cycle_id == 1
    assert all(o.outcome is Outcome.EXECUTED_PROTECTED for o in completed.outcomes)
    assert len(exchange.market_orders) == 2
    assert exchange.balance_requests == ["USD"]
    assert any("skipped" in record.getMessage() for record in caplog.records)
    skipped_events = [
        event
        for event in get_monitoring_center().recent_events(event_type="symbol_outcome")
        if event["message"] == "skipped_cycle"
    ]
    assert len(skipped_events) == 2
    assert not orchestrator.cycle_in_flight


def test_run_ticks_until_stopped() -> None:
    exchange = FakeExchange(candles={"BTC/USD": _history(100.0)})
    orchestrator, _ = _build(exchange, ["BTC/USD"], model=100.0, interval_seconds=0.05)

    async def _scenario() -> None:
        runner = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.18)
        await orchestrator.stop()
        await asyncio.wait_for(runner, timeout=2.0)

    asyncio.run(_scenario())

    assert len(exchange.balance_requests) >= 2


def test_start_once_runs_a_single_cycle() -> None:
    exchange = FakeExchange(candles={"BTC/USD": _history(100.0)})
    orchestrator, _ = _build(exchange, ["BTC/USD"], model=100.0)

    asyncio.run(orchestrator.start(once=True))

    assert exchange.balance_requests == ["USD"]


def test_stop_cancels_stuck_tasks_after_grace() -> None:
    exchange = GatedExchange(candles={"BTC/USD": _history(100.0)})
    orchestrator, _ = _build(exchange, ["BTC/USD"], interval_seconds=60.0, grace=0.05)

    async def _scenario() -> None:
        runner = asyncio.create_task(orchestrator.run())
        await exchange.entered.wait()
        await orchestrator.stop()
        await asyncio.wait_for(runner, timeout=3.0)

    asyncio.run(_scenario())

    events = get_monitoring_center().recent_events(event_type="symbol_outcome")
    assert events[0]["metadata"]["outcome"] == "failed"
    assert events[0]["metadata"]["detail"] == "analysis cancelled"
    assert exchange.market_orders == []


class SlowFillExchange(FakeExchange):
    """Accepts the entry order, then hangs before reporting the fill."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.order_sent = asyncio.Event()

    async def place_market_order(self, symbol: str, side: str, size: float):
        self.market_orders.append((symbol, side, size))
        self.order_sent.set()
        await asyncio.sleep(5.0)
        raise AssertionError("fill should never be reported")


def test_cancel_during_entry_reports_unprotected_position(
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.CRITICAL)
    exchange = SlowFillExchange(balance=10_000.0, candles={"BTC/USD": _history(100.0)})
    notifier = SimpleNamespace(send_unprotected_alert=AsyncMock())
    orchestrator, risk_manager = _build(
        exchange, ["BTC/USD"], notifier=notifier, interval_seconds=60.0, grace=0.05
    )

    async def _scenario() -> None:
        runner = asyncio.create_task(orchestrator.run())
        await exchange.order_sent.wait()
        await orchestrator.stop()
        await asyncio.wait_for(runner, timeout=3.0)

    asyncio.run(_scenario())

    events = get_monitoring_center().recent_events(event_type="symbol_outcome")
    assert events[0]["severity"] == "CRITICAL"
    assert events[0]["metadata"]["outcome"] == "executed_unprotected"
    assert events[0]["metadata"]["state"] == "unprotected"
    assert events[0]["metadata"]["detail"] == "entry possibly filled, cancelled before bracket"
    assert exchange.brackets == []
    assert risk_manager.reserved_total == pytest.approx(100.0)
    notifier.send_unprotected_alert.assert_awaited_once_with(
        "BTC/USD", None, "entry possibly filled, cancelled before bracket"
    )
    assert any("UNPROTECTED" in record.getMessage() for record in caplog.records)


def test_symbol_analysis_rejects_illegal_transitions() -> None:
    analysis = SymbolAnalysis("BTC/USD")
    analysis.advance(CycleState.FETCHING)

    with pytest.raises(RuntimeError):
        analysis.advance(CycleState.EXECUTING)

    analysis.advance(CycleState.PREDICTING)
    analysis.advance(CycleState.DECIDING)
    outcome = analysis.finish(CycleState.NO_ACTION, Outcome.NO_ACTION)
    assert analysis.history == [
        CycleState.IDLE,
        CycleState.FETCHING,
        CycleState.PREDICTING,
        CycleState.DECIDING,
        CycleState.NO_ACTION,
    ]
    assert outcome.state is CycleState.NO_ACTION
    with pytest.raises(RuntimeError):
        analysis.advance(CycleState.FETCHING)


def test_orchestrator_requires_symbols() -> None:
    with pytest.raises(ValueError):
        _build(FakeExchange(), [])
