"""
Channel access operations on top of python-telegram-bot's Bot.

The reconciliation pipeline and the access gate only need two things from
Telegram: single-use invite links and removing a member. Both go through here
so they share one retry policy.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from telegram import Bot
from telegram.error import BadRequest, NetworkError, RetryAfter, TelegramError

from ChannelSync.sync_utils import RetryPolicy

log = logging.getLogger("channel-sync")


def _is_transient(exc: BaseException) -> bool:
    # BadRequest subclasses NetworkError in python-telegram-bot.
    if isinstance(exc, RetryAfter):
        return True
    return isinstance(exc, NetworkError) and not isinstance(exc, BadRequest)


class TelegramChannel:
    """Invite links and removals for one bot."""

    def __init__(self, bot: Bot, *, retry_policy: Optional[RetryPolicy] = None):
        self.bot = bot
        self.retry_policy = retry_policy or RetryPolicy()

    async def _call(self, what: str, fn, *args, **kwargs):
        async for attempt in self.retry_policy.retrying(_is_transient):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    log.info(f"[Telegram] Retrying {what} (attempt {attempt.retry_state.attempt_number})")
                result = await fn(*args, **kwargs)
        return result

    async def create_chat_invite_link(
        self,
        chat_id: Union[int, str],
        *,
        member_limit: int = 1,
        expire_date: Optional[int] = None,
    ) -> str:
        expires = datetime.fromtimestamp(int(expire_date), tz=timezone.utc) if expire_date else None
        invite = await self._call(
            "createChatInviteLink",
            self.bot.create_chat_invite_link,
            chat_id=chat_id,
            expire_date=expires,
            member_limit=int(member_limit),
        )
        link = getattr(invite, "invite_link", None)
        if not link:
            raise TelegramError("createChatInviteLink returned no invite_link")
        return str(link)

    async def kick_chat_member(self, chat_id: Union[int, str], user_id: int) -> None:
        """Remove a user from the chat without leaving them banned."""
        await self._call("banChatMember", self.bot.ban_chat_member, chat_id=chat_id, user_id=int(user_id))
        await self._call(
            "unbanChatMember",
            self.bot.unban_chat_member,
            chat_id=chat_id,
            user_id=int(user_id),
            only_if_banned=True,
        )
