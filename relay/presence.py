import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional
from constants import DEFAULT_PRESENCE_USER
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class PresenceEntry:
    user: str = DEFAULT_PRESENCE_USER
    muted: bool = False


class PresenceState:
    """Voice/chat presence keyed by connection id.

    Entries are created by a voice join and dropped by a voice leave or when
    the connection closes. Mute updates for unknown ids are ignored.
    """

    def __init__(self):
        self._entries: Dict[str, PresenceEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._entries

    async def upsert(self, connection_id: str, user: Optional[str]) -> PresenceEntry:
        async with self._lock:
            entry = self._entries.get(connection_id)
            if entry is None:
                entry = PresenceEntry(user=user or DEFAULT_PRESENCE_USER)
                self._entries[connection_id] = entry
            else:
                entry.user = user or DEFAULT_PRESENCE_USER
        logger.debug(f"Presence upsert for {connection_id}: user={entry.user}")
        return entry

    async def set_muted(self, connection_id: str, muted: bool) -> bool:
        async with self._lock:
            entry = self._entries.get(connection_id)
            if entry is None:
                return False
            entry.muted = muted
        return True

    async def remove(self, connection_id: str) -> Optional[PresenceEntry]:
        async with self._lock:
            return self._entries.pop(connection_id, None)

    async def get(self, connection_id: str) -> Optional[PresenceEntry]:
        async with self._lock:
            return self._entries.get(connection_id)

    async def snapshot(self) -> List[dict]:
        async with self._lock:
            return [
                {"id": connection_id, "user": entry.user, "muted": entry.muted}
                for connection_id, entry in self._entries.items()
            ]
