from __future__ import annotations

import html
import logging
from typing import Any, Iterable

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.exceptions import TelegramAPIError, TelegramNetworkError, TelegramRetryAfter

logger = logging.getLogger(__name__)


class Notifier:
    """Fire-and-forget notification sink; failures never reach the caller."""

    async def notify(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    async def notify(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        logger.info("Notification: %s | %s | %s", title, body, data or {})


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        self.sent.append((title, body, dict(data or {})))


class TelegramNotifier(Notifier):
    def __init__(self, bot: Bot, chat_ids: Iterable[int]):
        self.bot = bot
        self.chat_ids = list(chat_ids)

    async def notify(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        text = f"<b>{html.escape(title)}</b>\n{html.escape(body)}"
        for chat_id in self.chat_ids:
            try:
                await self.bot.send_message(chat_id, text)
            except (TelegramRetryAfter, TelegramNetworkError) as exc:
                logger.warning("Telegram notification to %s deferred: %s", chat_id, exc)
            except TelegramAPIError as exc:
                logger.error("Telegram notification to %s failed: %s", chat_id, exc)


def build_notifier(bot_token: str | None, chat_ids: Iterable[int]) -> Notifier:
    chat_ids = list(chat_ids)
    if bot_token and chat_ids:
        bot = Bot(bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
        return TelegramNotifier(bot, chat_ids)
    return LogNotifier()
