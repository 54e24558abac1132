from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

from cachetools import TTLCache

from ChannelSync.models import UNKNOWN, Profile

log = logging.getLogger("channel-sync")

DEFAULT_HANDLE_FIELD = "custom.telegram-username"


def normalize_handle(handle: Optional[str]) -> str:
    """Return the '@'-prefixed form of a Telegram username ('Unknown' stays as is)."""
    h = str(handle or "").strip()
    if not h or h == UNKNOWN:
        return UNKNOWN
    return h if h.startswith("@") else f"@{h}"


def handle_key(handle: Optional[str]) -> str:
    """Case-insensitive comparison key; '' for unknown handles."""
    h = normalize_handle(handle)
    return "" if h == UNKNOWN else h.casefold()


class ProfileSource(Protocol):
    async def get_member(self, member_id: str) -> Dict[str, Any]: ...


class ProfileCache:
    """In-process TTL cache of profiles keyed by member id."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        maxsize: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = float(ttl_seconds)
        self._entries: TTLCache = TTLCache(maxsize=max(1, int(maxsize)), ttl=self.ttl_seconds, timer=clock)

    def get(self, member_id: str) -> Optional[Profile]:
        return self._entries.get(member_id)

    def set(self, member_id: str, profile: Profile) -> None:
        self._entries[member_id] = profile

    def __len__(self) -> int:
        return len(self._entries)


class IdentityResolver:
    """Maps a buyer member id to a profile and its Telegram handle."""

    def __init__(
        self,
        client: ProfileSource,
        cache: Optional[ProfileCache] = None,
        *,
        handle_field: str = DEFAULT_HANDLE_FIELD,
    ):
        self.client = client
        self.cache = cache if cache is not None else ProfileCache()
        self.handle_field = handle_field

    async def resolve_profile(self, member_id: str) -> Optional[Profile]:
        """Cached profile lookup. Returns None on any fetch/parse failure."""
        mid = str(member_id or "").strip()
        if not mid:
            return None
        cached = self.cache.get(mid)
        if cached is not None:
            return cached
        try:
            data = await self.client.get_member(mid)
            profile = Profile.from_api(data, member_id=mid)
        except Exception as e:
            log.warning(f"[Wix] Failed to fetch profile for member {mid}: {e}")
            return None
        self.cache.set(mid, profile)
        return profile

    def extract_handle(self, profile: Optional[Profile]) -> str:
        if profile is None:
            return UNKNOWN
        return normalize_handle(profile.custom_value(self.handle_field))
