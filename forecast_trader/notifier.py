"""Telegram notifier for unprotected-position alerts and heartbeats."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from telegram import Bot

from forecast_trader.services.types import Position

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelegramConfig:
    """Configuration payload required to talk to Telegram."""

    token: str
    chat_id: str


class Notifier:
    """Push critical runtime conditions to a Telegram chat."""

    HEARTBEAT_HOURS = (2, 8, 14, 20)

    def __init__(
        self,
        *,
        token: str,
        chat_id: str,
        bot: Optional[Bot] = None,
    ) -> None:
        if not token or not chat_id:
            raise ValueError("Telegram notifier requires both token and chat_id")
        self._config = TelegramConfig(token=token, chat_id=str(chat_id))
        self._bot: Bot = bot or Bot(token=token)
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._last_heartbeat: datetime | None = None

    @property
    def chat_id(self) -> str:
        return self._config.chat_id

    async def start(self) -> None:
        """Begin the background heartbeat scheduler."""

        if self._heartbeat_task is None:
            self._stop_event.clear()
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            LOGGER.info("Telegram notifier heartbeat loop started")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            finally:
                self._heartbeat_task = None
            LOGGER.info("Telegram notifier heartbeat loop stopped")

    async def send_unprotected_alert(
        self, symbol: str, position: Position | None, reason: str
    ) -> None:
        """Report an open position whose stop-loss/take-profit bracket was rejected."""

        lines = [f"🚨 <b>UNPROTECTED POSITION</b> {symbol}"]
        if position is not None:
            lines.append(
                f"{position.side.upper()} <code>{position.size:.8f}</code> "
                f"@ <code>{position.entry_price:,.2f}</code>"
            )
            if position.levels is not None:
                lines.append(
                    f"Intended stop <code>{position.levels.stop_loss_price:,.2f}</code> / "
                    f"target <code>{position.levels.take_profit_price:,.2f}</code>"
                )
        lines.append(f"Reason: {reason}")
        lines.append("Manual intervention required.")
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        message = "\n".join(lines) + f"\n<sub>{timestamp}</sub>"
        await self._send_message(message, parse_mode="HTML")

    async def send_error(self, error: Exception | str) -> None:
        await self._send_message(f"⚠️ <b>Trading agent error:</b> {error}", parse_mode="HTML")

    async def send_heartbeat(self) -> None:
        now = datetime.now(timezone.utc)
        self._last_heartbeat = now
        message = now.strftime("✅ Heartbeat: agent online at %H:%M UTC (%Y-%m-%d)")
        await self._send_message(message)

    async def _send_message(self, text: str, *, parse_mode: str | None = None) -> None:
        try:
            async with self._lock:
                await self._bot.send_message(
                    chat_id=self._config.chat_id,
                    text=text,
                    parse_mode=parse_mode,
                    disable_web_page_preview=True,
                )
        except Exception as exc:  # noqa: BLE001 - logging only; notifier must not crash loop
            LOGGER.warning("Failed to send Telegram message: %s", exc)

    async def _heartbeat_loop(self) -> None:
        while not self._stop_event.is_set():
            delay = self._seconds_until_next_heartbeat()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                await self.send_heartbeat()

    def _seconds_until_next_heartbeat(self) -> float:
        now = datetime.now(timezone.utc)
        for hour in self.HEARTBEAT_HOURS:
            target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
            if target > now:
                return (target - now).total_seconds()
        tomorrow = (now + timedelta(days=1)).replace(
            hour=self.HEARTBEAT_HOURS[0], minute=0, second=0, microsecond=0
        )
        return max((tomorrow - now).total_seconds(), 0.0)


__all__ = ["Notifier", "TelegramConfig"]
