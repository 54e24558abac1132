"""Registers the reconciliation passes on python-telegram-bot's JobQueue."""
from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, tzinfo
from typing import Optional

from telegram.ext import ContextTypes, JobQueue

from ChannelSync.config import SyncSettings
from ChannelSync.reconcile import DRIFT_CORRECTION, FULL_SYNC, HANDLE_REFRESH, ReconciliationPipeline

log = logging.getLogger("channel-sync")

STARTUP_SYNC = "startup_sync"


def next_hourly_run(now: datetime, minute: int) -> datetime:
    """First wall-clock time strictly after `now` at :minute."""
    candidate = now.replace(minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(hours=1)
    return candidate


def schedule_passes(
    job_queue: JobQueue,
    pipeline: ReconciliationPipeline,
    settings: SyncSettings,
    tz: tzinfo,
    *,
    now: Optional[datetime] = None,
) -> None:
    async def full_sync(context: ContextTypes.DEFAULT_TYPE) -> None:
        await pipeline.run_full_sync()

    async def handle_refresh(context: ContextTypes.DEFAULT_TYPE) -> None:
        await pipeline.run_handle_refresh()

    async def drift_correction(context: ContextTypes.DEFAULT_TYPE) -> None:
        await pipeline.run_drift_correction()

    job_queue.run_once(full_sync, when=0, name=STARTUP_SYNC)
    job_queue.run_daily(full_sync, time=time(hour=settings.full_sync_hour, tzinfo=tz), name=FULL_SYNC)
    log.info(f"[Scheduler] {FULL_SYNC} scheduled ({settings.full_sync_hour:02d}:00 daily)")

    first = next_hourly_run(now or datetime.now(tz), settings.handle_refresh_minute)
    job_queue.run_repeating(handle_refresh, interval=timedelta(hours=1), first=first, name=HANDLE_REFRESH)
    log.info(f"[Scheduler] {HANDLE_REFRESH} scheduled (hourly at :{settings.handle_refresh_minute:02d})")

    if settings.drift_correction_hour is None:
        log.info(f"[Scheduler] {DRIFT_CORRECTION} has no schedule; run it with /check_members")
        return
    job_queue.run_daily(
        drift_correction,
        time=time(hour=settings.drift_correction_hour, tzinfo=tz),
        name=DRIFT_CORRECTION,
    )
    log.info(f"[Scheduler] {DRIFT_CORRECTION} scheduled ({settings.drift_correction_hour:02d}:00 daily)")
