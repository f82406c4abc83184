#!/usr/bin/env python3
import asyncio
import logging
from typing import Optional, Set

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Fire-and-forget HTML messages to one chat. Delivery failures are logged, never raised."""

    def __init__(self, bot: Optional[Bot], chat_id: Optional[str]):
        self.bot = bot
        self.chat_id = chat_id
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return self.bot is not None and bool(self.chat_id)

    async def notify(self, text: str) -> bool:
        if not self.enabled:
            return False
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode='HTML')
            return True
        except (TelegramError, asyncio.TimeoutError) as exc:
            logger.warning("Telegram notification failed: %s", exc)
            return False

    def notify_nowait(self, text: str) -> None:
        """Schedules delivery without waiting for it."""
        if not self.enabled:
            return
        task = asyncio.create_task(self.notify(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
