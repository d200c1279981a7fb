from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from forecast_trader.notifier import Notifier
from forecast_trader.services.types import BracketLevels, Position


class DummyBot:
    def __init__(self) -> None:
        self.send_message = AsyncMock()


def _position() -> Position:
    return Position(
        symbol="BTC/USD",
        side="buy",
        size=0.004,
        entry_price=25_000.0,
        cost=100.0,
        levels=BracketLevels(stop_loss_price=24_500.0, take_profit_price=25_750.0),
    )


def test_unprotected_alert_includes_position_and_levels() -> None:
    bot = DummyBot()
    notifier = Notifier(token="token", chat_id="123", bot=bot)  # type: ignore[arg-type]

    asyncio.run(notifier.send_unprotected_alert("BTC/USD", _position(), "stop rejected"))

    assert bot.send_message.await_count == 1
    kwargs = bot.send_message.call_args.kwargs
    assert kwargs["chat_id"] == "123"
    assert kwargs["parse_mode"] == "HTML"
    assert "UNPROTECTED POSITION" in kwargs["text"]
    assert "24,500.00" in kwargs["text"]
    assert "25,750.00" in kwargs["text"]
    assert "stop rejected" in kwargs["text"]


def test_unprotected_alert_without_position() -> None:
    bot = DummyBot()
    notifier = Notifier(token="token", chat_id="123", bot=bot)  # type: ignore[arg-type]

    asyncio.run(notifier.send_unprotected_alert("ETH/USD", None, "timeout"))

    assert "ETH/USD" in bot.send_message.call_args.kwargs["text"]


def test_send_error_pushes_message() -> None:
    bot = DummyBot()
    notifier = Notifier(token="token", chat_id="123", bot=bot)  # type: ignore[arg-type]

    asyncio.run(notifier.send_error("agent crashed"))

    assert bot.send_message.await_count == 1
    assert "agent crashed" in bot.send_message.call_args.kwargs["text"]


def test_send_failure_is_logged_not_raised(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)
    bot = DummyBot()
    bot.send_message.side_effect = RuntimeError("telegram down")
    notifier = Notifier(token="token", chat_id="123", bot=bot)  # type: ignore[arg-type]

    asyncio.run(notifier.send_heartbeat())

    assert "telegram down" in caplog.text


def test_start_and_stop_heartbeat() -> None:
    bot = DummyBot()
    notifier = Notifier(token="token", chat_id="123", bot=bot)  # type: ignore[arg-type]

    async def _runner() -> None:
        await notifier.start()
        assert notifier._heartbeat_task is not None  # type: ignore[attr-defined]
        await notifier.stop()
        assert notifier._heartbeat_task is None  # type: ignore[attr-defined]

    asyncio.run(_runner())

    assert bot.send_message.await_count == 0


def test_heartbeat_delay_is_within_a_day() -> None:
    notifier = Notifier(token="token", chat_id="123", bot=DummyBot())  # type: ignore[arg-type]

    delay = notifier._seconds_until_next_heartbeat()  # type: ignore[attr-defined]

    assert 0.0 <= delay <= 24 * 3600


def test_missing_credentials_are_rejected() -> None:
    with pytest.raises(ValueError):
        Notifier(token="", chat_id="123", bot=DummyBot())  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        Notifier(token="token", chat_id="", bot=DummyBot())  # type: ignore[arg-type]
