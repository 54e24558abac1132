from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from ChannelSync.sync_utils import RetryPolicy

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_MESSAGES: Dict[str, str] = {
    "welcome_caption": "Welcome! Press the button below to join the channel.",
    "join_button": "Join the channel",
    "help": (
        "/start - show the join button\n"
        "/get_invite - get a single-use invite link\n"
        "/testid - show the Telegram ID the bot knows for you"
    ),
    "no_subscription": "Sorry, you don't have an active subscription.",
    "invite_link": "Here's your invite link: {link}\nThis link will expire in {minutes} minute(s).",
    "invite_error": "Sorry, there was an error generating the invite link. Please try again later.",
    "request_error": "Sorry, there was an error processing your request. Please try again later.",
    "your_id": "Your user ID is {user_id}.",
    "id_not_found": "User ID not found for {handle}.",
    "check_done": "Group membership check completed. {summary}",
    "check_error": "Error checking group memberships.",
    "not_allowed": "This command is restricted.",
}

# (section, key) -> env var consulted when the JSON value is empty or a placeholder.
ENV_FALLBACKS: Dict[Tuple[str, str], str] = {
    ("wix", "api_key"): "WIX_API_KEY",
    ("wix", "account_id"): "WIX_ACCOUNT_ID",
    ("wix", "site_id"): "WIX_SITE_ID",
    ("telegram", "bot_token"): "TELEGRAM_BOT_TOKEN",
    ("telegram", "channel_id"): "TELEGRAM_CHANNEL_ID",
    ("google_sheet", "spreadsheet_id"): "SPREADSHEET_ID",
}


class ConfigError(Exception):
    """Missing or invalid configuration."""


def _deep_merge_dict(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge overlay into base (in place) and return base.

    - Dict values are merged recursively
    - Other types overwrite
    """
    for k, v in overlay.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge_dict(base[k], v)
        else:
            base[k] = v
    return base


def load_json(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file (expected JSON object): {path}")
    return data


def load_config_with_secrets(
    base_dir: Path,
    config_name: str = "config.json",
    secrets_name: str = "config.secrets.json",
) -> Tuple[Dict[str, Any], Path, Path]:
    """Load config.json and merge config.secrets.json on top.

    Either file may be missing; the environment can supply everything.

    Returns: (merged_config, config_path, secrets_path)
    """
    config_path = Path(base_dir) / config_name
    secrets_path = Path(base_dir) / secrets_name
    config: Dict[str, Any] = load_json(config_path) if config_path.exists() else {}
    if secrets_path.exists():
        _deep_merge_dict(config, load_json(secrets_path))
    return config, config_path, secrets_path


def is_placeholder_secret(value: Any) -> bool:
    """Return True if the provided secret looks like a template/placeholder value."""
    if value is None:
        return True
    s = str(value).strip()
    if not s:
        return True
    upper = s.upper()
    if upper.startswith("PUT_") or upper.endswith("_HERE"):
        return True
    return upper in {"CHANGEME", "REPLACE_ME", "YOUR_TOKEN_HERE"}


def mask_secret(value: Any, show_last: int = 4) -> str:
    """Mask a secret for printing (never output full tokens)."""
    if value is None:
        return "<missing>"
    s = str(value)
    if not s:
        return "<missing>"
    if len(s) <= show_last:
        return "*" * len(s)
    return ("*" * (len(s) - show_last)) + s[-show_last:]


def apply_env_fallbacks(config: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    for (section, key), var in ENV_FALLBACKS.items():
        sec = config.setdefault(section, {})
        if not isinstance(sec, dict):
            raise ConfigError(f"config section '{section}' must be an object")
        if is_placeholder_secret(sec.get(key)) and (env.get(var) or "").strip():
            sec[key] = env[var].strip()
    return config


def _section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    v = cfg.get(name)
    return v if isinstance(v, dict) else {}


def _opt_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"expected an integer, got {v!r}") from e


def _channel_id(v: Any) -> int | str:
    s = str(v or "").strip()
    if s.lstrip("-").isdigit():
        return int(s)
    return s


@dataclass
class SyncSettings:
    wix_api_key: str
    wix_account_id: str
    wix_site_id: str
    telegram_bot_token: str
    telegram_channel_id: int | str
    spreadsheet_id: str
    tab_name: str = "Φύλλο1"
    wix_base_url: str = "https://www.wixapis.com"
    handle_field: str = "custom.telegram-username"
    include_inactive_orders: bool = True
    page_size: int = 50
    page_delay_seconds: float = 1.0
    http_timeout_s: float = 10.0
    profile_cache_ttl_seconds: float = 3600.0
    invite_ttl_seconds: int = 3600
    poll_timeout_s: int = 30
    admin_user_ids: List[int] = field(default_factory=list)
    welcome_photo_url: str = ""
    user_directory_file: Path = BASE_DIR / "user_directory.json"
    timezone: str = "UTC"
    full_sync_hour: int = 0
    handle_refresh_minute: int = 0
    drift_correction_hour: Optional[int] = 1
    wix_retry: RetryPolicy = field(default_factory=RetryPolicy)
    sheets_retry: RetryPolicy = field(default_factory=RetryPolicy)
    telegram_retry: RetryPolicy = field(default_factory=RetryPolicy)
    messages: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MESSAGES))
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_config(cls, config: Dict[str, Any], base_dir: Path = BASE_DIR) -> "SyncSettings":
        wix = _section(config, "wix")
        tg = _section(config, "telegram")
        sheet = _section(config, "google_sheet")
        sched = _section(config, "schedule")
        retry = _section(config, "retry")

        missing = [
            name
            for name, value in (
                ("wix.api_key", wix.get("api_key")),
                ("wix.site_id", wix.get("site_id")),
                ("telegram.bot_token", tg.get("bot_token")),
                ("telegram.channel_id", tg.get("channel_id")),
                ("google_sheet.spreadsheet_id", sheet.get("spreadsheet_id")),
            )
            if is_placeholder_secret(value)
        ]
        if missing:
            raise ConfigError(f"Missing required setting(s): {', '.join(missing)}")

        directory_file = Path(str(config.get("user_directory_file") or "user_directory.json"))
        if not directory_file.is_absolute():
            directory_file = Path(base_dir) / directory_file

        messages = dict(DEFAULT_MESSAGES)
        messages.update({k: str(v) for k, v in _section(config, "messages").items()})

        try:
            settings = cls(
                wix_api_key=str(wix["api_key"]).strip(),
                wix_account_id=str(wix.get("account_id") or "").strip(),
                wix_site_id=str(wix["site_id"]).strip(),
                telegram_bot_token=str(tg["bot_token"]).strip(),
                telegram_channel_id=_channel_id(tg["channel_id"]),
                spreadsheet_id=str(sheet["spreadsheet_id"]).strip(),
                tab_name=str(sheet.get("tab_name") or "Φύλλο1"),
                wix_base_url=str(wix.get("base_url") or "https://www.wixapis.com"),
                handle_field=str(wix.get("handle_field") or "custom.telegram-username"),
                include_inactive_orders=bool(wix.get("include_inactive_orders", True)),
                page_size=int(wix.get("page_size", 50)),
                page_delay_seconds=float(wix.get("page_delay_seconds", 1.0)),
                http_timeout_s=float(config.get("http_timeout_s", 10.0)),
                profile_cache_ttl_seconds=float(config.get("profile_cache_ttl_seconds", 3600)),
                invite_ttl_seconds=int(tg.get("invite_ttl_seconds", 3600)),
                poll_timeout_s=int(tg.get("poll_timeout_s", 30)),
                admin_user_ids=[int(x) for x in (tg.get("admin_user_ids") or [])],
                welcome_photo_url=str(tg.get("welcome_photo_url") or ""),
                user_directory_file=directory_file,
                timezone=str(sched.get("timezone") or "UTC"),
                full_sync_hour=int(sched.get("full_sync_hour", 0)),
                handle_refresh_minute=int(sched.get("handle_refresh_minute", 0)),
                drift_correction_hour=_opt_int(sched.get("drift_correction_hour", 1)),
                wix_retry=RetryPolicy.from_config(retry.get("wix")),
                sheets_retry=RetryPolicy.from_config(retry.get("sheets")),
                telegram_retry=RetryPolicy.from_config(retry.get("telegram")),
                messages=messages,
                raw=config,
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        hours = [("schedule.full_sync_hour", settings.full_sync_hour)]
        if settings.drift_correction_hour is not None:
            hours.append(("schedule.drift_correction_hour", settings.drift_correction_hour))
        for name, hour in hours:
            if not 0 <= hour <= 23:
                raise ConfigError(f"{name} out of range: {hour}")
        if not 0 <= settings.handle_refresh_minute <= 59:
            raise ConfigError(f"schedule.handle_refresh_minute out of range: {settings.handle_refresh_minute}")
        try:
            ZoneInfo(settings.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"schedule.timezone is not a known time zone: {settings.timezone!r}") from e
        return settings


def load_settings(base_dir: Optional[Path] = None) -> SyncSettings:
    """config.json + config.secrets.json + .env/environment -> SyncSettings."""
    base = Path(base_dir) if base_dir else BASE_DIR
    load_dotenv(base / ".env")
    load_dotenv()
    config, _config_path, _secrets_path = load_config_with_secrets(base)
    apply_env_fallbacks(config)
    return SyncSettings.from_config(config, base_dir=base)
