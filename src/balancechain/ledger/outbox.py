"""
Outbox / channel ledger.

Per (channel, peer) delivery bookkeeping used by the sync session:

    next_seq(channel, peer)               1 + highest seqInChannel (1 when empty)
    items_since(channel, peer, since)     pending items above `since`, ascending
    mark_delivered(channel, peer, upto)   pending items <= upto become delivered

Outbox rows are created by the interpreter (msg.intent); only the delivery
status is changed here, and only ever from pending to delivered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from balancechain.storage import Storage, StoreName
from balancechain.utils.timestamps import now_ms

logger = logging.getLogger(__name__)

DEFAULT_PULL_LIMIT = 200


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"


@dataclass
class OutboxEntry:
    id: str
    channel_id: str
    to_hid: str
    seq_in_channel: int
    text: str
    created_at: int
    status: DeliveryStatus = DeliveryStatus.PENDING
    delivered_at: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxEntry":
        return cls(
            id=row["id"],
            channel_id=row.get("channelId", ""),
            to_hid=row.get("toHid", ""),
            seq_in_channel=int(row.get("seqInChannel", 0)),
            text=row.get("text", ""),
            created_at=int(row.get("createdAt", 0)),
            status=DeliveryStatus(row.get("status", DeliveryStatus.PENDING.value)),
            delivered_at=row.get("deliveredAt"),
        )

    def to_wire_item(self) -> Dict[str, Any]:
        """Plaintext batch item: {seq, msgId, text, ts}."""
        return {
            "seq": self.seq_in_channel,
            "msgId": self.id,
            "text": self.text,
            "ts": self.created_at,
        }


class OutboxLedger:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def _rows(self, channel_id: str, peer_hid: str) -> List[Dict[str, Any]]:
        return [
            r
            for r in self._storage.get_all(StoreName.OUTBOX)
            if r.get("channelId") == channel_id and r.get("toHid") == peer_hid
        ]

    def get(self, msg_id: str) -> Optional[OutboxEntry]:
        row = self._storage.get(StoreName.OUTBOX, msg_id)
        return OutboxEntry.from_row(row) if row else None

    def next_seq(self, channel_id: str, peer_hid: str) -> int:
        seqs = [int(r.get("seqInChannel", 0)) for r in self._rows(channel_id, peer_hid)]
        return max(seqs, default=0) + 1

    def items_since(
        self,
        channel_id: str,
        peer_hid: str,
        since_seq: int,
        *,
        limit: int = DEFAULT_PULL_LIMIT,
    ) -> List[OutboxEntry]:
        items = [
            OutboxEntry.from_row(r)
            for r in self._rows(channel_id, peer_hid)
            if int(r.get("seqInChannel", 0)) > since_seq
            and r.get("status") != DeliveryStatus.DELIVERED.value
        ]
        items.sort(key=lambda e: e.seq_in_channel)
        return items[:limit]

    def pending(self, channel_id: Optional[str] = None) -> List[OutboxEntry]:
        items = [
            OutboxEntry.from_row(r)
            for r in self._storage.get_all(StoreName.OUTBOX)
            if r.get("status") != DeliveryStatus.DELIVERED.value
            and (channel_id is None or r.get("channelId") == channel_id)
        ]
        items.sort(key=lambda e: (e.channel_id, e.seq_in_channel))
        return items

    def mark_delivered(self, channel_id: str, peer_hid: str, up_to_seq: int) -> int:
        """
        Mark every pending item with seqInChannel <= up_to_seq delivered.

        Idempotent: already delivered rows are left untouched. Returns the
        number of rows that changed.
        """
        changed = 0
        ts = now_ms()
        with self._storage.transaction([StoreName.OUTBOX]) as tx:
            for row in tx.get_all(StoreName.OUTBOX):
                if row.get("channelId") != channel_id or row.get("toHid") != peer_hid:
                    continue
                if int(row.get("seqInChannel", 0)) > up_to_seq:
                    continue
                if row.get("status") == DeliveryStatus.DELIVERED.value:
                    continue
                row["status"] = DeliveryStatus.DELIVERED.value
                row["deliveredAt"] = ts
                tx.put(StoreName.OUTBOX, row["id"], row)
                changed += 1
        if changed:
            logger.info(
                "Marked %d outbox item(s) delivered on %s up to seq %d",
                changed,
                channel_id,
                up_to_seq,
            )
        return changed
