import asyncio
from types import SimpleNamespace

import pytest
from telegram.error import BadRequest, Forbidden, RetryAfter, TimedOut

from ChannelSync.sync_utils import RetryPolicy
from ChannelSync.telegram_channel import TelegramChannel

FAST = RetryPolicy(attempts=3, backoff_base_s=0, backoff_max_s=0)


class FakeBot:
    def __init__(self, failures=()):
        self.failures = list(failures)
        self.calls = []

    def _next(self, name, kwargs):
        self.calls.append((name, kwargs))
        if self.failures:
            raise self.failures.pop(0)

    async def create_chat_invite_link(self, **kwargs):
        self._next("create_chat_invite_link", kwargs)
        return SimpleNamespace(invite_link="https://t.me/+abc")

    async def ban_chat_member(self, **kwargs):
        self._next("ban_chat_member", kwargs)
        return True

    async def unban_chat_member(self, **kwargs):
        self._next("unban_chat_member", kwargs)
        return True


def test_invite_link_is_single_use_with_expiry():
    bot = FakeBot()
    link = asyncio.run(TelegramChannel(bot, retry_policy=FAST).create_chat_invite_link(-100123, expire_date=1_700_003_600))
    assert link == "https://t.me/+abc"
    _, kwargs = bot.calls[0]
    assert kwargs["member_limit"] == 1
    assert int(kwargs["expire_date"].timestamp()) == 1_700_003_600


def test_kick_bans_then_unbans():
    bot = FakeBot()
    asyncio.run(TelegramChannel(bot, retry_policy=FAST).kick_chat_member(-100123, 222))
    assert [name for name, _ in bot.calls] == ["ban_chat_member", "unban_chat_member"]
    assert bot.calls[1][1]["only_if_banned"] is True


def test_transient_errors_are_retried():
    bot = FakeBot([TimedOut(), RetryAfter(1)])
    asyncio.run(TelegramChannel(bot, retry_policy=FAST).kick_chat_member(-100123, 222))
    assert [name for name, _ in bot.calls] == ["ban_chat_member"] * 3 + ["unban_chat_member"]


@pytest.mark.parametrize("error", [BadRequest("User is an administrator of the chat"), Forbidden("bot was kicked")])
def test_permanent_errors_are_not_retried(error):
    bot = FakeBot([error])
    with pytest.raises(type(error)):
        asyncio.run(TelegramChannel(bot, retry_policy=FAST).kick_chat_member(-100123, 222))
    assert len(bot.calls) == 1
