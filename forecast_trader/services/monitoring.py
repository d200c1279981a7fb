"""Structured event buffer for per-cycle observability."""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Deque, List, Mapping

from forecast_trader.services.logging import get_logger
from forecast_trader.services.types import Outcome, SymbolOutcome

LOGGER = get_logger(__name__)

# Severity attached to each per-symbol outcome. An unprotected position is the
# one business-critical condition and must never be reported below CRITICAL.
OUTCOME_SEVERITY: Mapping[Outcome, str] = {
    Outcome.NO_ACTION: "INFO",
    Outcome.EXECUTED_PROTECTED: "INFO",
    Outcome.EXECUTED_UNPROTECTED: "CRITICAL",
    Outcome.FETCH_FAILED: "WARNING",
    Outcome.PREDICT_FAILED: "WARNING",
    Outcome.INSUFFICIENT_BALANCE: "INFO",
    Outcome.ORDER_FAILED: "ERROR",
    Outcome.SKIPPED_CYCLE: "WARNING",
    Outcome.FAILED: "ERROR",
}

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


@dataclass(slots=True)
class MonitoringEvent:
    """Structured representation of a monitoring event."""

    timestamp: datetime
    event_type: str
    severity: str
    message: str
    symbol: str | None = None
    cycle_id: int | None = None
    metadata: Mapping[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        if self.metadata is not None:
            payload["metadata"] = dict(self.metadata)
        return payload


class MonitoringCenter:
    """Thread-safe event buffer that mirrors each event as a JSON log line."""

    def __init__(self, max_events: int = 500) -> None:
        self._events: Deque[MonitoringEvent] = deque(maxlen=max_events)
        self._lock = RLock()

    def record_event(
        self,
        event_type: str,
        severity: str,
        message: str,
        *,
        symbol: str | None = None,
        cycle_id: int | None = None,
        metadata: Mapping[str, object] | None = None,
        timestamp: datetime | None = None,
    ) -> MonitoringEvent:
        severity_upper = severity.upper()
        event = MonitoringEvent(
            timestamp=timestamp or datetime.now(timezone.utc),
            event_type=event_type,
            severity=severity_upper,
            message=message,
            symbol=symbol,
            cycle_id=cycle_id,
            metadata=dict(metadata) if metadata is not None else None,
        )
        with self._lock:
            self._events.appendleft(event)
        LOGGER.log(
            _LEVELS.get(severity_upper, logging.INFO),
            json.dumps(event.to_dict(), default=str),
        )
        return event

    def record_outcome(self, outcome: SymbolOutcome, *, cycle_id: int | None = None) -> MonitoringEvent:
        """Publish the ``{symbol, outcome, timestamp}`` record for one symbol."""

        metadata: dict[str, object] = {
            "outcome": outcome.outcome.value,
            "state": outcome.state.value,
        }
        if outcome.detail is not None:
            metadata["detail"] = outcome.detail
        if outcome.position is not None:
            metadata["position"] = outcome.position.to_dict()
        return self.record_event(
            "symbol_outcome",
            OUTCOME_SEVERITY[outcome.outcome],
            outcome.outcome.value,
            symbol=outcome.symbol,
            cycle_id=cycle_id,
            metadata=metadata,
            timestamp=outcome.timestamp,
        )

    def recent_events(
        self, limit: int | None = None, *, event_type: str | None = None
    ) -> List[dict[str, object]]:
        """Return buffered events newest first, optionally filtered and truncated."""

        with self._lock:
            events = list(self._events)
        if event_type is not None:
            events = [event for event in events if event.event_type == event_type]
        if limit is not None:
            events = events[:limit]
        return [event.to_dict() for event in events]

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


_MONITORING_CENTER = MonitoringCenter()


def get_monitoring_center() -> MonitoringCenter:
    """Return the singleton monitoring center."""

    return _MONITORING_CENTER


__all__ = ["MonitoringCenter", "MonitoringEvent", "OUTCOME_SEVERITY", "get_monitoring_center"]
