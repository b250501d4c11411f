import asyncio
from unittest.mock import AsyncMock

from aiogram.exceptions import TelegramNetworkError

from chatsync.config import Settings
from chatsync.services.notifications import LogNotifier, TelegramNotifier, build_notifier


def test_telegram_notifier_escapes_and_fans_out():
    bot = AsyncMock()
    notifier = TelegramNotifier(bot, [1, 2])

    asyncio.run(notifier.notify("Session <timed out>", "a & b"))

    assert bot.send_message.await_count == 2
    chat_id, text = bot.send_message.await_args_list[0].args
    assert chat_id == 1
    assert text == "<b>Session &lt;timed out&gt;</b>\na &amp; b"


def test_telegram_errors_do_not_propagate():
    bot = AsyncMock()
    bot.send_message.side_effect = TelegramNetworkError(None, "timeout")
    notifier = TelegramNotifier(bot, [1, 2])

    asyncio.run(notifier.notify("title", "body"))
    assert bot.send_message.await_count == 2


def test_build_notifier_without_bot_logs():
    assert isinstance(build_notifier(None, {1}), LogNotifier)
    assert isinstance(build_notifier("123:abc", []), LogNotifier)


def test_settings_parse_lists():
    cfg = Settings(operation_retry_delays="0.5, x, 2", notify_chat_ids="10, 20,bad", _env_file=None)
    assert cfg.retry_delays == [0.5, 2.0]
    assert cfg.notify_chat_id_set == {10, 20}
    assert Settings(operation_retry_delays="", _env_file=None).retry_delays == [1.0]
    assert Settings(realtime_reconnect_delays="0.5,1", _env_file=None).reconnect_delays == [0.5, 1.0]
    assert Settings(_env_file=None).reconnect_delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
