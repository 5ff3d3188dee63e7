import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))  # noqa: E402
os.environ.setdefault("BOT_TOKEN", "123456789:TESTTOKENEXAMPLEEXAMPLEEXAMPLEEX")

import bot  # noqa: E402
from bot import TelegramNotifier  # noqa: E402
from db import ActiveKey, PaymentIntent, Subscriber  # noqa: E402

INTENT = PaymentIntent("tx-1", "user_5_1", "5", 180, "RUB", 1)


@pytest.mark.asyncio
async def test_operator_alert_goes_to_every_admin():
    tg = AsyncMock()
    notifier = TelegramNotifier(tg, [10, 11])
    await notifier.operator_alert(3, "5", INTENT, "grant failed")
    assert [c.args[0] for c in tg.send_message.await_args_list] == [10, 11]
    text = tg.send_message.await_args.args[1]
    assert "#3" in text and "tx-1" in text and "grant failed" in text


@pytest.mark.asyncio
async def test_operator_alert_without_admins_is_logged(caplog):
    tg = AsyncMock()
    await TelegramNotifier(tg, []).operator_alert(3, "5", INTENT, "grant failed")
    tg.send_message.assert_not_awaited()
    assert "alert #3" in caplog.text


@pytest.mark.asyncio
async def test_activation_failed_mentions_transaction():
    tg = AsyncMock()
    await TelegramNotifier(tg, []).activation_failed("5", INTENT)
    assert "tx-1" in tg.send_message.await_args.args[1]


@pytest.mark.asyncio
async def test_send_errors_do_not_propagate():
    tg = AsyncMock()
    tg.send_message.side_effect = RuntimeError("blocked by user")
    await TelegramNotifier(tg, []).payment_failed("5", INTENT)


@pytest.mark.asyncio
async def test_key_granted_sends_key():
    tg = AsyncMock()
    sub = Subscriber("5", first_name="Ann", active_key=ActiveKey("uuid-1", "premium_5_1", 2, 5000))
    with patch("bot.send_activation_prompt", new=AsyncMock()) as prompt_mock:
        await TelegramNotifier(tg, []).key_granted(sub, INTENT)
    assert "Premium активирован на 1 месяц" in tg.send_message.await_args.args[1]
    prompt_mock.assert_awaited_once_with("5", "uuid-1", 5000, "Premium_Ann")


def test_production_requires_webhook_secret(monkeypatch):
    monkeypatch.setattr(bot, "APP_ENV", "production")
    monkeypatch.setattr(bot.gateway, "webhook_secret", None)
    with pytest.raises(RuntimeError):
        bot.check_webhook_security()

    monkeypatch.setattr(bot.gateway, "webhook_secret", "s")
    bot.check_webhook_security()
