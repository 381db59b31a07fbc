"""
Callbacks the sync session uses to reach the application.

Subclass SyncHandler and override what you need; every hook has a no-op
default. Hooks are awaited one at a time per peer, in frame order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from balancechain.ledger import OutboxEntry

from .frames import BatchItem


@dataclass
class PeerStatus:
    """
    Session lifecycle event for one peer.

    state is one of: created, signaling, negotiating, open, ready,
    e2ee:error, transport:<connection state>, closed
    """

    peer_hid: str
    state: str
    error: Optional[str] = None


PullItem = Union[OutboxEntry, BatchItem, Dict[str, Any]]


class SyncHandler:
    async def on_pull_request(
        self, from_hid: str, channel_id: str, since_seq: int
    ) -> Sequence[PullItem]:
        return []

    async def on_intent_batch(
        self, from_hid: str, channel_id: str, items: List[BatchItem]
    ) -> None:
        return None

    async def on_ack(self, from_hid: str, channel_id: str, up_to_seq: int) -> None:
        return None

    def on_status(self, status: Any) -> None:
        return None
