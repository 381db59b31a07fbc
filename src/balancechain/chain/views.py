"""
Read side of the derived views.

Messages, contacts and channels are written only by the interpreter during
an append. Presence is the exception: it is a soft, TTL-bound hint received
out of band and never chained, so it is written here directly.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from balancechain.storage import Storage, StoreName
from balancechain.utils.timestamps import now_ms


class ChainViews:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def messages(self, channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = self._storage.get_all(StoreName.MESSAGES)
        if channel_id is not None:
            rows = [m for m in rows if m.get("channelId") == channel_id]
        rows.sort(key=lambda m: (m.get("ts", 0), m.get("seq", 0)))
        return rows

    def contacts(self) -> List[Dict[str, Any]]:
        rows = self._storage.get_all(StoreName.CONTACTS)
        rows.sort(key=lambda c: c.get("addedAt", 0))
        return rows

    def contact(self, hid: str) -> Optional[Dict[str, Any]]:
        return self._storage.get(StoreName.CONTACTS, hid)

    def channels(self) -> List[Dict[str, Any]]:
        return self._storage.get_all(StoreName.CHANNELS)

    def channel(self, channel_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get(StoreName.CHANNELS, channel_id)

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def record_presence(
        self,
        hid: str,
        *,
        ts: int,
        ttl_ms: int,
        hints: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._storage.put(
            StoreName.PRESENCE,
            hid,
            {"hid": hid, "ts": ts, "expiresAt": ts + ttl_ms, "hints": hints or {}},
        )

    def presence(self, hid: str, *, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Presence record for `hid`, or None when absent or expired."""
        row = self._storage.get(StoreName.PRESENCE, hid)
        if not row:
            return None
        if row.get("expiresAt", 0) <= (now if now is not None else now_ms()):
            return None
        return row

    def online(self, *, now: Optional[int] = None) -> List[str]:
        current = now if now is not None else now_ms()
        return [
            p["hid"]
            for p in self._storage.get_all(StoreName.PRESENCE)
            if p.get("expiresAt", 0) > current
        ]
