"""Common data structures shared across trading services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional, Sequence, Tuple

TradeSide = Literal["buy", "sell"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Decision(str, Enum):
    """Trade decision derived from a price window and a forecast."""

    BUY = "buy"
    SELL = "sell"
    NO_ACTION = "no_action"

    @property
    def side(self) -> TradeSide:
        """Exchange side string for an actionable decision."""

        if self is Decision.NO_ACTION:
            raise ValueError("NO_ACTION has no order side")
        return "buy" if self is Decision.BUY else "sell"


class CycleState(str, Enum):
    """Progress of one symbol's analysis within one cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    PREDICTING = "predicting"
    DECIDING = "deciding"
    NO_ACTION = "no_action"
    RESERVING = "reserving"
    EXECUTING = "executing"
    BRACKET_PLACED = "bracket_placed"
    UNPROTECTED = "unprotected"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {CycleState.NO_ACTION, CycleState.BRACKET_PLACED, CycleState.UNPROTECTED, CycleState.FAILED}
)

# Legal state transitions; anything else is a programming error.
ALLOWED_TRANSITIONS: Dict[CycleState, frozenset[CycleState]] = {
    CycleState.IDLE: frozenset({CycleState.FETCHING}),
    CycleState.FETCHING: frozenset({CycleState.PREDICTING, CycleState.FAILED}),
    CycleState.PREDICTING: frozenset({CycleState.DECIDING, CycleState.FAILED}),
    CycleState.DECIDING: frozenset({CycleState.NO_ACTION, CycleState.RESERVING, CycleState.FAILED}),
    CycleState.RESERVING: frozenset({CycleState.EXECUTING, CycleState.FAILED}),
    CycleState.EXECUTING: frozenset(
        {CycleState.BRACKET_PLACED, CycleState.UNPROTECTED, CycleState.FAILED}
    ),
}


class Outcome(str, Enum):
    """Per-symbol, per-cycle result published as a structured event."""

    NO_ACTION = "no_action"
    EXECUTED_PROTECTED = "executed_protected"
    EXECUTED_UNPROTECTED = "executed_unprotected"
    FETCH_FAILED = "fetch_failed"
    PREDICT_FAILED = "predict_failed"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    ORDER_FAILED = "order_failed"
    SKIPPED_CYCLE = "skipped_cycle"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PriceWindow:
    """Recent close/high/low history for one symbol, most recent last."""

    symbol: str
    closes: Tuple[float, ...]
    highs: Tuple[float, ...]
    lows: Tuple[float, ...]

    def __post_init__(self) -> None:
        if not (len(self.closes) == len(self.highs) == len(self.lows)):
            raise ValueError("closes, highs and lows must have equal length")

    def __len__(self) -> int:
        return len(self.closes)

    @property
    def last_close(self) -> float:
        if not self.closes:
            raise ValueError(f"Price window for {self.symbol} is empty")
        return self.closes[-1]

    def tail(self, count: int) -> Tuple[float, ...]:
        """Return the last ``count`` closes."""

        return self.closes[-count:]


@dataclass(frozen=True, slots=True)
class Forecast:
    """A predicted next price paired with the window that produced it."""

    predicted_price: float
    window: PriceWindow


@dataclass(frozen=True, slots=True)
class BracketLevels:
    """Protective price levels for an open position."""

    stop_loss_price: float
    take_profit_price: float


@dataclass(frozen=True, slots=True)
class BracketOrder:
    """Accepted linked stop-loss/take-profit order."""

    order_ref: str
    levels: BracketLevels


@dataclass(frozen=True, slots=True)
class Fill:
    price: float
    size: float


@dataclass(frozen=True, slots=True)
class OrderReceipt:
    """Exchange acknowledgement of a market order."""

    order_id: str
    fills: Sequence[Fill]


@dataclass(frozen=True, slots=True)
class FillResult:
    """Confirmed entry fill; the entry price comes from the first fill."""

    order_id: str
    size: float
    entry_price: float


@dataclass(slots=True)
class Position:
    """Open position created only after a confirmed entry fill.

    ``size`` is the filled base quantity and ``cost`` the quote capital that
    was reserved for it.
    """

    symbol: str
    side: TradeSide
    size: float
    entry_price: float
    cost: float
    bracket_order_ref: Optional[str] = None
    levels: Optional[BracketLevels] = None
    opened_at: datetime = field(default_factory=_utcnow)

    @property
    def protected(self) -> bool:
        return self.bracket_order_ref is not None

    def to_dict(self) -> Dict[str, object]:
        return {
            "symbol": self.symbol,
            "side": self.side,
            "size": self.size,
            "entry_price": self.entry_price,
            "cost": self.cost,
            "bracket_order_ref": self.bracket_order_ref,
            "stop_loss_price": self.levels.stop_loss_price if self.levels else None,
            "take_profit_price": self.levels.take_profit_price if self.levels else None,
            "protected": self.protected,
            "opened_at": self.opened_at.isoformat(),
        }


@dataclass(slots=True)
class SymbolOutcome:
    """Structured record of how one symbol's analysis ended."""

    symbol: str
    outcome: Outcome
    state: CycleState
    detail: Optional[str] = None
    position: Optional[Position] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, object]:
        return {
            "symbol": self.symbol,
            "outcome": self.outcome.value,
            "state": self.state.value,
            "detail": self.detail,
            "position": self.position.to_dict() if self.position else None,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class CycleReport:
    """Summary returned by :meth:`Orchestrator.run_cycle`."""

    cycle_id: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    outcomes: List[SymbolOutcome] = field(default_factory=list)

    def by_symbol(self) -> Dict[str, SymbolOutcome]:
        return {outcome.symbol: outcome for outcome in self.outcomes}
