"""
Node: one participant, wired end to end.

    identity + storage
        -> StateLog      (every local change is a signed chain entry)
        -> OutboxLedger  (what still has to reach each peer)
        -> ChainViews    (messages, contacts, channels, presence)
    SignalingClient -> SyncManager -> peer sessions

Delivery of one message from A to B:

    A.send_message(B, text)   A chains msg.intent + msg.sent
    B.sync_with(A)            B pulls, A serves pending outbox items
                              B chains msg.delivered per new item, then msg.ack
                              B acks; A marks the outbox items delivered
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence

from balancechain.chain import AppendResult, ChainViews, EntryType, StateLog
from balancechain.codec import random_id
from balancechain.config import BalanceChainSettings, get_settings
from balancechain.identity import Identity, derive_channel_id, load_or_create_identity
from balancechain.ledger import OutboxEntry, OutboxLedger
from balancechain.signaling import SignalingClient, SignalMessage, SignalStatus
from balancechain.storage import Storage, open_storage
from balancechain.sync import BatchItem, PeerStatus, SignalKind, SyncHandler, SyncManager
from balancechain.utils.timestamps import now_ms

logger = logging.getLogger(__name__)


class Node(SyncHandler):
    """
    Usage:
        node = Node.open("alice.db")
        await node.start(["ws://127.0.0.1:8787"])
        await node.send_message(bob_hid, "hello")
        await node.sync_with(bob_hid)
        await node.stop()
    """

    def __init__(
        self,
        identity: Identity,
        storage: Storage,
        *,
        settings: Optional[BalanceChainSettings] = None,
    ) -> None:
        self.identity = identity
        self.storage = storage
        self.settings = settings or get_settings()

        self.log = StateLog(storage, nonce_bytes=self.settings.chain.nonce_bytes)
        self.ledger = OutboxLedger(storage)
        self.views = ChainViews(storage)

        self.signaling: Optional[SignalingClient] = None
        self.sync: Optional[SyncManager] = None
        self.events: Deque[Any] = deque(maxlen=200)
        self._send_lock = asyncio.Lock()

    @classmethod
    def open(
        cls,
        db_path: Optional[str] = None,
        *,
        hik: Optional[str] = None,
        settings: Optional[BalanceChainSettings] = None,
    ) -> "Node":
        cfg = settings or get_settings()
        storage = open_storage(db_path if db_path is not None else cfg.chain.db_path)
        return cls(load_or_create_identity(storage, hik), storage, settings=cfg)

    @property
    def hid(self) -> str:
        return self.identity.hid

    def channel_with(self, peer_hid: str) -> str:
        return derive_channel_id(self.hid, peer_hid)

    # ------------------------------------------------------------------
    # Online lifecycle
    # ------------------------------------------------------------------

    async def start(self, urls: Optional[Iterable[str]] = None, *, sync: Optional[SyncManager] = None) -> None:
        self.signaling = SignalingClient(
            list(urls) if urls is not None else self.settings.signaling.urls,
            hid=self.hid,
            on_message=self.on_message,
            on_status=self.on_status,
            settings=self.settings.signaling,
        )
        self.sync = sync or SyncManager(
            my_hid=self.hid,
            signaling=self.signaling,
            agreement_keys=self.identity.agreement,
            handler=self,
            settings=self.settings.sync,
        )
        await self.signaling.start()

    async def stop(self) -> None:
        if self.sync is not None:
            await self.sync.close_all()
        if self.signaling is not None:
            await self.signaling.stop()

    # ------------------------------------------------------------------
    # Local chain operations
    # ------------------------------------------------------------------

    async def chat(self, text: str) -> AppendResult:
        return await self.log.append(self.identity, EntryType.CHAT_APPEND, {"text": text})

    async def add_contact(self, hid: str, nickname: str = "") -> AppendResult:
        return await self.log.append(
            self.identity, EntryType.CONTACT_ADD, {"hid": hid, "nickname": nickname}
        )

    async def open_channel(self, peer_hid: str) -> AppendResult:
        channel_id = self.channel_with(peer_hid)
        return await self.log.append(
            self.identity, EntryType.CHANNEL_OPEN, {"channelId": channel_id, "peerHid": peer_hid}
        )

    async def send_message(self, peer_hid: str, text: str) -> AppendResult:
        """
        Queue `text` for `peer_hid`: msg.intent (outbox row) then msg.sent.

        Returns the result of the failing append, or of msg.sent when both
        succeeded; its entry payload carries msgId and seqInChannel.
        """
        channel_id = self.channel_with(peer_hid)
        async with self._send_lock:
            payload = {
                "msgId": random_id(16),
                "channelId": channel_id,
                "toHid": peer_hid,
                "seqInChannel": self.ledger.next_seq(channel_id, peer_hid),
                "text": text,
            }
            res = await self.log.append(self.identity, EntryType.MSG_INTENT, payload)
            if not res.ok:
                logger.warning("msg.intent for %s rejected: %s", peer_hid, res.reason)
                return res
            res = await self.log.append(self.identity, EntryType.MSG_SENT, payload)
            if not res.ok:
                logger.warning("msg.sent for %s rejected: %s", peer_hid, res.reason)
            return res

    def messages(self, peer_hid: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.views.messages(self.channel_with(peer_hid) if peer_hid else None)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _require_sync(self) -> SyncManager:
        if self.sync is None:
            raise RuntimeError("Node is not started")
        return self.sync

    async def sync_with(self, peer_hid: str, *, timeout: Optional[float] = None) -> bool:
        """Connect to `peer_hid` and pull what it holds for us. False if unreachable."""
        sync = self._require_sync()
        await sync.dial(peer_hid)
        if not await sync.wait_connected(peer_hid, timeout):
            logger.info("Peer %s not reachable", peer_hid)
            return False
        channel_id = self.channel_with(peer_hid)
        channel = self.views.channel(channel_id) or {}
        return await sync.send_pull(peer_hid, channel_id, int(channel.get("lastPulledSeq", 0)))

    async def announce_presence(
        self, hids: Iterable[str], hints: Optional[Dict[str, Any]] = None
    ) -> bool:
        if self.signaling is None:
            return False
        return await self.signaling.broadcast(
            hids,
            {
                "kind": SignalKind.PRESENCE.value,
                "ts": now_ms(),
                "ttl": self.settings.sync.presence_ttl_s,
                "hints": hints or {},
            },
        )

    # ------------------------------------------------------------------
    # SyncHandler
    # ------------------------------------------------------------------

    async def on_pull_request(
        self, from_hid: str, channel_id: str, since_seq: int
    ) -> Sequence[OutboxEntry]:
        if channel_id != self.channel_with(from_hid):
            logger.warning("Pull for foreign channel %s from %s", channel_id, from_hid)
            return []
        return self.ledger.items_since(
            channel_id, from_hid, since_seq, limit=self.settings.sync.pull_limit
        )

    async def on_intent_batch(
        self, from_hid: str, channel_id: str, items: List[BatchItem]
    ) -> None:
        if channel_id != self.channel_with(from_hid):
            logger.warning("Batch for foreign channel %s from %s", channel_id, from_hid)
            return

        channel = self.views.channel(channel_id) or {}
        last_pulled = int(channel.get("lastPulledSeq", 0))
        fresh: Dict[int, BatchItem] = {}
        for item in items:
            if item.seq > last_pulled and item.seq not in fresh:
                fresh[item.seq] = item

        if not fresh:
            if items and self.sync is not None:
                # everything was already delivered; our earlier ack may have been lost
                await self.sync.send_ack(from_hid, channel_id, last_pulled)
            return

        up_to = 0
        for seq in sorted(fresh):
            item = fresh[seq]
            res = await self.log.append(
                self.identity,
                EntryType.MSG_DELIVERED,
                {
                    "channelId": channel_id,
                    "fromHid": from_hid,
                    "seqInChannel": item.seq,
                    "msgId": item.msg_id,
                    "text": item.text,
                    "ts": item.ts,
                },
            )
            if not res.ok:
                logger.warning("msg.delivered seq=%d rejected: %s", item.seq, res.reason)
                break
            up_to = item.seq

        if not up_to:
            if last_pulled and self.sync is not None:
                await self.sync.send_ack(from_hid, channel_id, last_pulled)
            return
        res = await self.log.append(
            self.identity,
            EntryType.MSG_ACK,
            {"channelId": channel_id, "peerHid": from_hid, "upToSeq": up_to},
        )
        if not res.ok:
            logger.warning("msg.ack up to %d rejected: %s", up_to, res.reason)
            return
        if self.sync is not None:
            await self.sync.send_ack(from_hid, channel_id, up_to)

    async def on_ack(self, from_hid: str, channel_id: str, up_to_seq: int) -> None:
        if channel_id != self.channel_with(from_hid):
            return
        self.ledger.mark_delivered(channel_id, from_hid, up_to_seq)

    def on_status(self, status: Any) -> None:
        self.events.append(status)
        if isinstance(status, SignalStatus) and status.state == "nack":
            logger.info("Relay could not reach %s: %s", status.to, status.reason)
        elif isinstance(status, PeerStatus) and status.error:
            logger.info("Peer %s %s: %s", status.peer_hid, status.state, status.error)

    async def on_message(self, message: SignalMessage) -> None:
        data = message.data if isinstance(message.data, dict) else {}
        kind = data.get("kind")
        if kind in (SignalKind.OFFER.value, SignalKind.ANSWER.value, SignalKind.ICE.value):
            if self.sync is not None:
                await self.sync.on_signal(message.from_hid, data)
        elif kind == SignalKind.PRESENCE.value:
            self._record_presence(message.from_hid, data)
        else:
            logger.debug("Ignoring signal %r from %s", kind, message.from_hid)

    def _record_presence(self, hid: str, data: Dict[str, Any]) -> None:
        try:
            ttl_s = int(data.get("ttl") or self.settings.sync.presence_ttl_s)
        except (TypeError, ValueError, OverflowError):
            ttl_s = self.settings.sync.presence_ttl_s
        ttl_s = max(0, min(ttl_s, self.settings.sync.presence_ttl_s))
        hints = data.get("hints") if isinstance(data.get("hints"), dict) else {}
        self.views.record_presence(hid, ts=now_ms(), ttl_ms=ttl_s * 1000, hints=hints)
