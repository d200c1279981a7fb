"""Periodic scheduler that fans out one analysis task per symbol."""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, Set

from forecast_trader.services.errors import (
    BracketError,
    FetchError,
    InsufficientBalanceError,
    OrderError,
    PredictionError,
)
from forecast_trader.services.executor import OrderExecutor
from forecast_trader.services.logging import get_logger
from forecast_trader.services.market_data import MarketDataPort
from forecast_trader.services.monitoring import MonitoringCenter, get_monitoring_center
from forecast_trader.services.prediction import PredictionPort
from forecast_trader.services.risk_manager import RiskManager
from forecast_trader.services.strategy import decide
from forecast_trader.services.types import (
    ALLOWED_TRANSITIONS,
    CycleReport,
    CycleState,
    Decision,
    Outcome,
    Position,
    SymbolOutcome,
)

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from forecast_trader.broker.candle_stream import CandleStream
    from forecast_trader.notifier import Notifier


class BalanceSource(Protocol):
    async def get_free_balance(self, asset: str) -> float: ...


class SymbolAnalysis:
    """State machine for one symbol within one cycle."""

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        self.state = CycleState.IDLE
        self.history: List[CycleState] = [CycleState.IDLE]
        self.side: Optional[str] = None
        self.reserved = 0.0

    def advance(self, state: CycleState) -> None:
        allowed = ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise RuntimeError(
                f"{self.symbol}: illegal transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)

    def finish(
        self,
        state: CycleState,
        outcome: Outcome,
        *,
        detail: str | None = None,
        position: Position | None = None,
    ) -> SymbolOutcome:
        self.advance(state)
        return SymbolOutcome(
            symbol=self.symbol,
            outcome=outcome,
            state=state,
            detail=detail,
            position=position,
        )

    def fail(self, outcome: Outcome, detail: str) -> SymbolOutcome:
        return self.finish(CycleState.FAILED, outcome, detail=detail)


class Orchestrator:
    """Run analysis cycles on a fixed cadence.

    Each cycle refreshes the balance snapshot, then runs every symbol as its
    own task. A symbol's failure ends as an outcome record for that symbol
    only. A cycle requested while another is still running is skipped.
    """

    def __init__(
        self,
        *,
        exchange: BalanceSource,
        market_data: MarketDataPort,
        prediction: PredictionPort,
        risk_manager: RiskManager,
        executor: OrderExecutor,
        symbols: Sequence[str],
        quote_asset: str = "USD",
        interval_seconds: float = 300.0,
        shutdown_grace_seconds: float = 10.0,
        monitoring_center: MonitoringCenter | None = None,
        notifier: "Notifier" | None = None,
        candle_stream: "CandleStream" | None = None,
    ) -> None:
        if not symbols:
            raise ValueError("At least one symbol is required")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._exchange = exchange
        self._market_data = market_data
        self._prediction = prediction
        self._risk_manager = risk_manager
        self._executor = executor
        self._symbols = list(dict.fromkeys(symbols))
        self._quote_asset = quote_asset
        self._interval = float(interval_seconds)
        self._grace = max(0.0, float(shutdown_grace_seconds))
        self._monitoring = monitoring_center or get_monitoring_center()
        self._notifier = notifier
        self._candle_stream = candle_stream
        self._logger = get_logger(__name__)
        self._cycle_ids = itertools.count(1)
        self._active_cycle: Optional[int] = None
        self._cycle_tasks: Set[asyncio.Task] = set()
        self._symbol_tasks: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()

    @property
    def symbols(self) -> list[str]:
        return list(self._symbols)

    @property
    def cycle_in_flight(self) -> bool:
        return self._active_cycle is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, *, once: bool = False) -> None:
        if self._candle_stream is not None:
            await self._candle_stream.start()
        self._logger.info(
            "Orchestrator started for %s every %.0fs", ", ".join(self._symbols), self._interval
        )
        if once:
            try:
                await self.run_cycle()
            finally:
                await self._stop_stream()
            return
        await self.run()

    async def run(self) -> None:
        """Launch a cycle on every tick until :meth:`stop` is called.

        Ticks follow a fixed schedule; a tick that lands while a cycle is
        still running produces a skipped cycle.
        """

        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._stop_event.is_set():
            self._launch_cycle()
            now = loop.time()
            while next_tick <= now:
                next_tick += self._interval
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                continue
        await self._drain()

    async def stop(self) -> None:
        self._stop_event.set()
        await self._stop_stream()

    async def _stop_stream(self) -> None:
        if self._candle_stream is not None:
            await self._candle_stream.stop()

    def _launch_cycle(self) -> None:
        task = asyncio.create_task(self._guarded_cycle(), name="cycle")
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)

    async def _guarded_cycle(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - the timer must survive a broken cycle
            self._logger.exception("Cycle crashed outside symbol isolation")

    async def _drain(self) -> None:
        pending = {task for task in self._cycle_tasks if not task.done()}
        if not pending:
            return
        self._logger.info(
            "Waiting up to %.1fs for %d in-flight cycle(s)", self._grace, len(pending)
        )
        _, still_pending = await asyncio.wait(pending, timeout=self._grace)
        if not still_pending:
            return
        self._logger.warning(
            "Cancelling %d symbol task(s) after %.1fs grace period",
            len(self._symbol_tasks),
            self._grace,
        )
        for task in list(self._symbol_tasks):
            task.cancel()
        # Cancelled symbol tasks still end as recorded outcomes; a cycle stuck
        # before fan-out is cancelled outright.
        _, stuck = await asyncio.wait(still_pending, timeout=1.0)
        for task in stuck:
            task.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def run_cycle(self) -> CycleReport:
        cycle_id = next(self._cycle_ids)
        report = CycleReport(cycle_id=cycle_id, started_at=datetime.now(timezone.utc))
        if self._active_cycle is not None:
            return self._skip_cycle(report)

        self._active_cycle = cycle_id
        try:
            if cycle_id > 1:
                self._log_stale_feeds()
            try:
                free_balance = await self._exchange.get_free_balance(self._quote_asset)
                self._risk_manager.sync_balance(free_balance)
            except Exception as exc:  # noqa: BLE001 - never size against a stale snapshot
                self._logger.error(
                    "Cycle %d: %s balance refresh failed, skipping all symbols: %s",
                    cycle_id,
                    self._quote_asset,
                    exc,
                )
                outcomes = [
                    SymbolOutcome(
                        symbol=symbol,
                        outcome=Outcome.FETCH_FAILED,
                        state=CycleState.FAILED,
                        detail=f"balance refresh failed: {exc}",
                    )
                    for symbol in self._symbols
                ]
            else:
                outcomes = await self._analyse_all(cycle_id)
            report.outcomes.extend(outcomes)
            for outcome in outcomes:
                self._monitoring.record_outcome(outcome, cycle_id=cycle_id)
        finally:
            self._active_cycle = None
        report.finished_at = datetime.now(timezone.utc)
        self._logger.info(
            "Cycle %d finished in %.2fs: %s",
            cycle_id,
            (report.finished_at - report.started_at).total_seconds(),
            ", ".join(f"{o.symbol}={o.outcome.value}" for o in report.outcomes),
        )
        return report

    def _skip_cycle(self, report: CycleReport) -> CycleReport:
        self._logger.warning(
            "Cycle %d skipped: cycle %s is still in flight",
            report.cycle_id,
            self._active_cycle,
        )
        report.skipped = True
        for symbol in self._symbols:
            outcome = SymbolOutcome(
                symbol=symbol,
                outcome=Outcome.SKIPPED_CYCLE,
                state=CycleState.IDLE,
                detail=f"cycle {self._active_cycle} still in flight",
            )
            report.outcomes.append(outcome)
            self._monitoring.record_outcome(outcome, cycle_id=report.cycle_id)
        report.finished_at = datetime.now(timezone.utc)
        return report

    async def _analyse_all(self, cycle_id: int) -> List[SymbolOutcome]:
        analyses = [SymbolAnalysis(symbol) for symbol in self._symbols]
        tasks = [
            asyncio.create_task(
                self._run_analysis(analysis), name=f"analysis::{analysis.symbol}"
            )
            for analysis in analyses
        ]
        self._symbol_tasks.update(tasks)
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._symbol_tasks.difference_update(tasks)

        outcomes: List[SymbolOutcome] = []
        for analysis, result in zip(analyses, results):
            symbol = analysis.symbol
            if isinstance(result, SymbolOutcome):
                outcomes.append(result)
                continue
            if isinstance(result, asyncio.CancelledError):
                if analysis.state is CycleState.EXECUTING:
                    outcomes.append(await self._cancelled_during_entry(analysis))
                    continue
                detail = "analysis cancelled"
            else:
                detail = f"unexpected error: {result!r}"
                self._logger.error(
                    "Cycle %d: analysis for %s raised %r",
                    cycle_id,
                    symbol,
                    result,
                    exc_info=result if isinstance(result, Exception) else None,
                )
            outcomes.append(
                SymbolOutcome(
                    symbol=symbol,
                    outcome=Outcome.FAILED,
                    state=CycleState.FAILED,
                    detail=detail,
                )
            )
        return outcomes

    async def analyse_symbol(self, symbol: str) -> SymbolOutcome:
        """Fetch, predict, decide and, for BUY/SELL, reserve and execute."""

        return await self._run_analysis(SymbolAnalysis(symbol))

    async def _run_analysis(self, analysis: SymbolAnalysis) -> SymbolOutcome:
        symbol = analysis.symbol

        analysis.advance(CycleState.FETCHING)
        try:
            window = await self._market_data.fetch_window(symbol)
        except FetchError as exc:
            self._logger.warning("Skipping %s: %s", symbol, exc.reason)
            return analysis.fail(Outcome.FETCH_FAILED, exc.reason)

        analysis.advance(CycleState.PREDICTING)
        try:
            forecast = await self._prediction.predict(window)
        except PredictionError as exc:
            self._logger.warning("Skipping %s: %s", symbol, exc.reason)
            return analysis.fail(Outcome.PREDICT_FAILED, exc.reason)

        analysis.advance(CycleState.DECIDING)
        decision = decide(window, forecast.predicted_price)
        summary = f"last={window.last_close:.8f} predicted={forecast.predicted_price:.8f}"
        if decision is Decision.NO_ACTION:
            return analysis.finish(CycleState.NO_ACTION, Outcome.NO_ACTION, detail=summary)
        side = decision.side
        self._logger.info("[TRADE] %s signal for %s (%s)", side.upper(), symbol, summary)

        analysis.advance(CycleState.RESERVING)
        try:
            size = self._risk_manager.reserve(side)
        except InsufficientBalanceError as exc:
            self._logger.info("[RISK] Skipping %s %s: %s", side.upper(), symbol, exc)
            return analysis.fail(Outcome.INSUFFICIENT_BALANCE, str(exc))

        analysis.side = side
        analysis.reserved = size
        analysis.advance(CycleState.EXECUTING)
        try:
            position = await self._executor.execute(symbol, side, size)
        except OrderError as exc:
            return analysis.fail(Outcome.ORDER_FAILED, exc.reason)
        except BracketError as exc:
            await self._alert_unprotected(exc.symbol, exc.position, exc.reason)
            return analysis.finish(
                CycleState.UNPROTECTED,
                Outcome.EXECUTED_UNPROTECTED,
                detail=exc.reason,
                position=exc.position,
            )
        return analysis.finish(
            CycleState.BRACKET_PLACED, Outcome.EXECUTED_PROTECTED, position=position
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _cancelled_during_entry(self, analysis: SymbolAnalysis) -> SymbolOutcome:
        # The entry order may already be live at the venue; its reservation
        # stays committed until the next balance refresh.
        detail = "entry possibly filled, cancelled before bracket"
        self._logger.critical(
            "[TRADE] UNPROTECTED %s %s: %s (reserved %.2f)",
            (analysis.side or "?").upper(),
            analysis.symbol,
            detail,
            analysis.reserved,
        )
        await self._alert_unprotected(analysis.symbol, None, detail)
        return analysis.finish(
            CycleState.UNPROTECTED, Outcome.EXECUTED_UNPROTECTED, detail=detail
        )

    async def _alert_unprotected(
        self, symbol: str, position: Position | None, reason: str
    ) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.send_unprotected_alert(symbol, position, reason)
        except Exception:  # noqa: BLE001 - alert delivery is best effort
            self._logger.debug("Failed to push unprotected-position alert", exc_info=True)

    def _log_stale_feeds(self) -> None:
        if self._candle_stream is None:
            return
        stale = self._candle_stream.stale_symbols(max_age_seconds=2 * self._interval)
        if stale:
            self._logger.warning("No recent candle updates for: %s", ", ".join(stale))


__all__ = ["BalanceSource", "Orchestrator", "SymbolAnalysis"]
