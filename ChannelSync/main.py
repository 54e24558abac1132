#!/usr/bin/env python3
"""
ChannelSync daemon.

Keeps a Telegram private channel in line with Wix Pricing Plans subscriptions,
using a Google Sheet as the membership record.
"""
import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional
from zoneinfo import ZoneInfo

from telegram import Update
from telegram.ext import Application

from ChannelSync.access_gate import AccessGate
from ChannelSync.bot_commands import BotCommandRouter
from ChannelSync.config import BASE_DIR, ConfigError, SyncSettings, load_settings, mask_secret
from ChannelSync.identity import IdentityResolver, ProfileCache
from ChannelSync.identity_directory import IdentityDirectory
from ChannelSync.jobs import schedule_passes
from ChannelSync.reconcile import ReconciliationPipeline
from ChannelSync.sheet_store import SheetStore, load_service_account_info
from ChannelSync.telegram_channel import TelegramChannel
from ChannelSync.wix_api_client import WixAPIClient

log = logging.getLogger("channel-sync")


class ChannelSyncApp:
    """Builds the components from settings; the Application owns polling and the job queue."""

    def __init__(self, settings: SyncSettings, base_dir: Path = BASE_DIR):
        self.settings = settings
        self.application = (
            Application.builder()
            .token(settings.telegram_bot_token)
            .read_timeout(settings.http_timeout_s)
            .write_timeout(settings.http_timeout_s)
            .connect_timeout(settings.http_timeout_s)
            .build()
        )
        self.channel = TelegramChannel(self.application.bot, retry_policy=settings.telegram_retry)
        self.wix = WixAPIClient(
            settings.wix_api_key,
            settings.wix_account_id,
            settings.wix_site_id,
            settings.wix_base_url,
            retry_policy=settings.wix_retry,
            timeout_s=settings.http_timeout_s,
        )
        sheet_cfg = settings.raw.get("google_sheet") if isinstance(settings.raw.get("google_sheet"), dict) else {}
        self.store = SheetStore(
            settings.spreadsheet_id,
            settings.tab_name,
            service_account_info=load_service_account_info(sheet_cfg, base_dir=base_dir),
            retry_policy=settings.sheets_retry,
        )
        self.directory = IdentityDirectory(settings.user_directory_file)
        self.resolver = IdentityResolver(
            self.wix,
            ProfileCache(ttl_seconds=settings.profile_cache_ttl_seconds),
            handle_field=settings.handle_field,
        )
        self.pipeline = ReconciliationPipeline(
            self.wix,
            self.resolver,
            self.directory,
            self.store,
            self.channel,
            settings.telegram_channel_id,
            include_inactive_orders=settings.include_inactive_orders,
            page_size=settings.page_size,
            page_delay_seconds=settings.page_delay_seconds,
        )
        self.gate = AccessGate(
            self.store,
            self.channel,
            settings.telegram_channel_id,
            invite_ttl_seconds=settings.invite_ttl_seconds,
        )
        self.router = BotCommandRouter(
            self.directory,
            self.gate,
            self.pipeline,
            messages=settings.messages,
            invite_ttl_seconds=settings.invite_ttl_seconds,
            admin_user_ids=settings.admin_user_ids,
            welcome_photo_url=settings.welcome_photo_url,
        )

    def log_startup(self) -> None:
        s = self.settings
        log.info("=" * 60)
        log.info("  ChannelSync")
        log.info("=" * 60)
        log.info(f"[Config] Wix site: {s.wix_site_id} (account {s.wix_account_id or '<none>'})")
        log.info(f"[Config] Wix API key: {mask_secret(s.wix_api_key)}")
        log.info(f"[Config] Telegram bot token: {mask_secret(s.telegram_bot_token)}")
        log.info(f"[Config] Telegram channel: {s.telegram_channel_id}")
        log.info(f"[Config] Spreadsheet: {s.spreadsheet_id} tab '{s.tab_name}'")
        log.info(f"[Config] Include inactive orders: {s.include_inactive_orders}")
        log.info(f"[Directory] Known users: {len(self.directory)}")
        log.info("-" * 60)

    async def run_once(self) -> int:
        self.directory.load()
        self.log_startup()
        async with self.application.bot:
            sync = await self.pipeline.run_full_sync()
            drift = await self.pipeline.run_drift_correction()
        return 0 if sync.status in ("ok", "empty") and drift.status == "ok" else 1

    def run(self) -> None:
        self.directory.load()
        self.log_startup()
        self.router.install(self.application)
        schedule_passes(self.application.job_queue, self.pipeline, self.settings, ZoneInfo(self.settings.timezone))
        log.info("[Telegram] Bot started in polling mode")
        self.application.run_polling(allowed_updates=Update.ALL_TYPES, timeout=self.settings.poll_timeout_s)
        log.info("[Bot] Shut down")


def run(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Wix -> Google Sheet -> Telegram channel membership sync")
    parser.add_argument("--config-dir", help="Directory holding config.json / config.secrets.json / .env")
    parser.add_argument("--once", action="store_true", help="Run one full sync and one drift correction, then exit")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    # httpx logs every getUpdates request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    base_dir = Path(args.config_dir).resolve() if args.config_dir else BASE_DIR
    try:
        settings = load_settings(base_dir)
    except ConfigError as e:
        log.error(f"[Config] {e}")
        return 2
    app = ChannelSyncApp(settings, base_dir=base_dir)
    if args.once:
        return asyncio.run(app.run_once())
    app.run()
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
