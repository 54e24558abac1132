from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from ChannelSync.identity import handle_key, normalize_handle
from ChannelSync.sync_utils import load_json, save_json

log = logging.getLogger("channel-sync")


class IdentityDirectory:
    """
    Telegram handle -> numeric user id, learned as users talk to the bot.

    Append-only: the first id seen for a handle wins and entries are never removed.
    The JSON file is advisory; losing it just means starting empty.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        # casefolded handle -> (display handle, user id)
        self._entries: Dict[str, tuple[str, int]] = {}

    def load(self) -> int:
        """Merge the persisted mapping into memory. Returns entries loaded."""
        if not self.path:
            return 0
        if not self.path.exists():
            log.info(f"[Directory] No existing user directory at {self.path}, starting fresh")
            return 0
        data = load_json(self.path)
        users = data.get("users") if isinstance(data.get("users"), dict) else data
        loaded = 0
        for handle, uid in (users or {}).items():
            try:
                user_id = int(uid)
            except (TypeError, ValueError):
                continue
            key = handle_key(handle)
            if key and key not in self._entries:
                self._entries[key] = (normalize_handle(handle), user_id)
                loaded += 1
        log.info(f"[Directory] Loaded {loaded} user(s) from {self.path}")
        return loaded

    def save(self) -> bool:
        if not self.path:
            return False
        try:
            save_json(self.path, {"users": {h: uid for h, uid in self._entries.values()}})
            return True
        except OSError as e:
            log.error(f"[Directory] Failed to save {self.path}: {e}")
            return False

    def lookup(self, handle: Optional[str]) -> Optional[int]:
        rec = self._entries.get(handle_key(handle))
        return rec[1] if rec else None

    def register(self, handle: Optional[str], user_id: int) -> bool:
        """Add handle -> user_id unless the handle is already known."""
        key = handle_key(handle)
        if not key or key in self._entries:
            return False
        self._entries[key] = (normalize_handle(handle), int(user_id))
        log.info(f"[Directory] User registered: {normalize_handle(handle)} with ID: {user_id}")
        self.save()
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, handle: object) -> bool:
        return isinstance(handle, str) and handle_key(handle) in self._entries
