from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

log = logging.getLogger("channel-sync")


def parse_dt_any(ts_str: str | int | float | None) -> datetime | None:
    """Parse ISO/unix-ish timestamps into UTC datetime (best-effort)."""
    if ts_str is None or ts_str == "":
        return None
    try:
        if isinstance(ts_str, (int, float)):
            val = float(ts_str)
            # Heuristic: treat large values as milliseconds.
            if abs(val) > 1.0e11:
                val = val / 1000.0
            return datetime.fromtimestamp(val, tz=timezone.utc)
        s = str(ts_str).strip()
        if not s or s.upper() == "N/A":
            return None
        if "T" in s or "-" in s:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        val = float(s)
        if abs(val) > 1.0e11:
            val = val / 1000.0
        return datetime.fromtimestamp(val, tz=timezone.utc)
    except Exception:
        return None


def load_json(path: Path) -> dict:
    """Load a JSON object from disk; return {} on missing/empty/invalid."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        if path.stat().st_size == 0:
            return {}
        with open(path, "r", encoding="utf-8") as f:
            data = f.read().strip()
        if not data:
            return {}
        obj = json.loads(data)
        return obj if isinstance(obj, dict) else {}
    except Exception as e:
        log.error(f"Failed to read {path}: {e}. Treating as empty.")
        return {}


def save_json(path: Path, data: dict) -> None:
    """Atomic JSON write (tmp + replace)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Unique tmp name so two processes never share one.
    tmp = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    last_err: Exception | None = None
    for _attempt in range(6):
        try:
            os.replace(tmp, path)
            return
        except OSError as e:
            last_err = e
            time.sleep(0.05)
    try:
        if tmp.exists():
            tmp.unlink()
    except OSError:
        pass
    if last_err:
        raise last_err
    raise OSError("save_json failed")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for one adapter."""

    attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_max_s: float = 10.0

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "RetryPolicy":
        cfg = cfg if isinstance(cfg, dict) else {}
        try:
            attempts = max(1, int(cfg.get("attempts", 3)))
        except (TypeError, ValueError):
            attempts = 3
        try:
            base = max(0.0, float(cfg.get("backoff_base_s", 1.0)))
        except (TypeError, ValueError):
            base = 1.0
        try:
            cap = max(base, float(cfg.get("backoff_max_s", 10.0)))
        except (TypeError, ValueError):
            cap = max(base, 10.0)
        return cls(attempts=attempts, backoff_base_s=base, backoff_max_s=cap)

    def retrying(self, should_retry: Callable[[BaseException], bool]) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff_base_s, max=self.backoff_max_s),
            retry=retry_if_exception(should_retry),
            reraise=True,
        )


NO_RETRY = RetryPolicy(attempts=1, backoff_base_s=0.0, backoff_max_s=0.0)
