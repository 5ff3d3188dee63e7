import asyncio
import os
import sys
from unittest.mock import AsyncMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))  # noqa: E402
os.environ.setdefault("BOT_TOKEN", "123456789:TESTTOKENEXAMPLEEXAMPLEEXAMPLEEX")

from bot import notify_expirations_loop  # noqa: E402
from db import ActiveKey, Subscriber  # noqa: E402

NOW = 1_700_000_000
DAY = 24 * 60 * 60


def keyed(user_id, expires_at):
    return Subscriber(user_id, active_key=ActiveKey("id", f"mail_{user_id}", 1, expires_at))


async def run_once(subs, last=None):
    send = AsyncMock()
    mark = AsyncMock()
    with patch("bot.list_keyed_subscribers", new=AsyncMock(return_value=subs)), \
         patch("bot.get_last_notification", new=AsyncMock(return_value=last)), \
         patch("bot.set_last_notification", new=mark), \
         patch("bot.bot.send_message", new=send), \
         patch("bot.time.time", return_value=NOW), \
         patch("bot.asyncio.sleep", new=AsyncMock(side_effect=asyncio.CancelledError)):
        with pytest.raises(asyncio.CancelledError):
            await notify_expirations_loop(interval=0)
    return send, mark


@pytest.mark.asyncio
async def test_reminders_for_three_days_and_expiry():
    subs = [keyed("1", NOW + 3 * DAY), keyed("2", NOW - 10), keyed("3", NOW + 10 * DAY)]
    send, mark = await run_once(subs)
    assert [c.args[0] for c in send.await_args_list] == ["1", "2"]
    assert "3 дня" in send.await_args_list[0].args[1]
    assert "закончился" in send.await_args_list[1].args[1]
    assert [c.args for c in mark.await_args_list] == [("1", NOW), ("2", NOW)]


@pytest.mark.asyncio
async def test_reminder_sent_at_most_once_a_day():
    send, mark = await run_once([keyed("1", NOW + 3 * DAY)], last=NOW - 60)
    send.assert_not_awaited()
    mark.assert_not_awaited()
