"""
Telegram bot command surface.

Commands and inline-button callbacks are plain entries in two handler tables;
`install()` puts them on a python-telegram-bot Application. The reconciliation
passes never depend on this module.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, TypeHandler

from ChannelSync.access_gate import AccessGate
from ChannelSync.identity import normalize_handle
from ChannelSync.identity_directory import IdentityDirectory
from ChannelSync.reconcile import ReconciliationPipeline

log = logging.getLogger("channel-sync")

JOIN_CHANNEL = "join_channel"

Handler = Callable[[Update, ContextTypes.DEFAULT_TYPE], Awaitable[None]]


def sender_handle(update: Update) -> str:
    user = update.effective_user
    return normalize_handle(user.username if user else None)


class BotCommandRouter:
    def __init__(
        self,
        directory: IdentityDirectory,
        gate: AccessGate,
        pipeline: ReconciliationPipeline,
        *,
        messages: Dict[str, str],
        invite_ttl_seconds: int = 3600,
        admin_user_ids: Optional[List[int]] = None,
        welcome_photo_url: str = "",
    ):
        self.directory = directory
        self.gate = gate
        self.pipeline = pipeline
        self.messages = messages
        self.invite_ttl_seconds = invite_ttl_seconds
        self.admin_user_ids = set(admin_user_ids or [])
        self.welcome_photo_url = welcome_photo_url

        self.commands: Dict[str, Handler] = {
            "start": self.cmd_start,
            "help": self.cmd_help,
            "testid": self.cmd_testid,
            "check_members": self.cmd_check_members,
            "get_invite": self.cmd_get_invite,
        }
        self.callbacks: Dict[str, Handler] = {
            JOIN_CHANNEL: self.cb_join_channel,
        }

    def install(self, application: Application) -> None:
        # Group -1 runs before the command handlers for every update.
        application.add_handler(TypeHandler(Update, self.register_sender), group=-1)
        for name, handler in self.commands.items():
            application.add_handler(CommandHandler(name, handler))
        for data, handler in self.callbacks.items():
            application.add_handler(CallbackQueryHandler(handler, pattern=f"^{data}$"))
        application.add_error_handler(self.on_error)

    def msg(self, key: str, **kwargs: Any) -> str:
        return self.messages.get(key, key).format(**kwargs)

    async def reply(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> None:
        chat = update.effective_chat
        if chat is None:
            return
        await context.bot.send_message(chat_id=chat.id, text=text, reply_markup=reply_markup)

    async def register_sender(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Learn handle -> id from anyone talking to the bot."""
        user = update.effective_user
        if user is None or user.is_bot or not user.username:
            return
        self.directory.register(user.username, user.id)

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not isinstance(update, Update):
            log.error(f"[Telegram] Error outside an update: {context.error}", exc_info=context.error)
            return
        log.error(
            f"[Telegram] Error processing update from {sender_handle(update)}: {context.error}",
            exc_info=context.error,
        )
        try:
            await self.reply(update, context, self.msg("request_error"))
        except Exception as e:
            log.error(f"[Telegram] Could not send error reply: {e}")

    # -----------------------------
    # Handlers
    # -----------------------------
    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        keyboard = InlineKeyboardMarkup([[InlineKeyboardButton(self.msg("join_button"), callback_data=JOIN_CHANNEL)]])
        chat = update.effective_chat
        if self.welcome_photo_url and chat is not None:
            await context.bot.send_photo(
                chat_id=chat.id,
                photo=self.welcome_photo_url,
                caption=self.msg("welcome_caption"),
                reply_markup=keyboard,
            )
            return
        await self.reply(update, context, self.msg("welcome_caption"), reply_markup=keyboard)

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self.reply(update, context, self.msg("help"))

    async def cmd_testid(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        handle = sender_handle(update)
        user_id = self.directory.lookup(handle)
        if user_id is not None:
            await self.reply(update, context, self.msg("your_id", user_id=user_id))
        else:
            await self.reply(update, context, self.msg("id_not_found", handle=handle))

    async def cmd_check_members(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        user = update.effective_user
        if self.admin_user_ids and (user is None or user.id not in self.admin_user_ids):
            log.warning(f"[Telegram] /check_members refused for {sender_handle(update)} ({user.id if user else '?'})")
            await self.reply(update, context, self.msg("not_allowed"))
            return
        report = await self.pipeline.run_drift_correction()
        if report.status == "aborted":
            await self.reply(update, context, self.msg("check_error"))
            return
        await self.reply(update, context, self.msg("check_done", summary=report.summary()))

    async def cmd_get_invite(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        active, link = await self.gate.check_and_issue(sender_handle(update))
        if not active:
            await self.reply(update, context, self.msg("no_subscription"))
            return
        if not link:
            await self.reply(update, context, self.msg("invite_error"))
            return
        minutes = max(1, round(self.invite_ttl_seconds / 60))
        await self.reply(update, context, self.msg("invite_link", link=link, minutes=minutes))

    async def cb_join_channel(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await update.callback_query.answer()
        await self.cmd_get_invite(update, context)
