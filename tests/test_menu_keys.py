import os
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))  # noqa: E402
os.environ.setdefault("BOT_TOKEN", "123456789:TESTTOKENEXAMPLEEXAMPLEEXAMPLEEX")

from bot import menu_keys  # noqa: E402
from db import ActiveKey, Subscriber  # noqa: E402


def make_message():
    return SimpleNamespace(
        from_user=SimpleNamespace(id=1, first_name="Ann"), chat=SimpleNamespace(id=2)
    )


@pytest.mark.asyncio
async def test_menu_keys_shows_active_key():
    sub = Subscriber("1", active_key=ActiveKey("uuid-1", "trial_1", 1, 123))
    with patch("bot.get_subscriber", new=AsyncMock(return_value=sub)), \
         patch("bot.send_activation_prompt", new=AsyncMock()) as prompt_mock, \
         patch("bot.time.time", return_value=0):
        await menu_keys(make_message())
    prompt_mock.assert_awaited_once_with(2, "uuid-1", 123, "Ann")


@pytest.mark.asyncio
async def test_menu_keys_without_key():
    with patch("bot.get_subscriber", new=AsyncMock(return_value=None)), \
         patch("bot.send_temporary", new=AsyncMock()) as send_mock:
        await menu_keys(make_message())
    assert send_mock.await_args.args[2] == "У вас нет активного ключа."


@pytest.mark.asyncio
async def test_menu_keys_expired_key():
    sub = Subscriber("1", active_key=ActiveKey("uuid-1", "trial_1", 1, 123))
    with patch("bot.get_subscriber", new=AsyncMock(return_value=sub)), \
         patch("bot.send_activation_prompt", new=AsyncMock()) as prompt_mock, \
         patch("bot.send_temporary", new=AsyncMock()) as send_mock:
        await menu_keys(make_message())
    prompt_mock.assert_not_awaited()
    assert "истёк" in send_mock.await_args.args[2]
