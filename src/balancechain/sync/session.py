"""
Peer sync sessions.

One PeerSession per remote HID. The session is negotiated over signaling
(offer/answer/candidates), then speaks the pull/batch/ack protocol over a
direct data channel:

    A (owner of messages)                  B (recipient)
        <-------------- pull {channelId, sinceSeq}
        batch {channelId, e2ee, items} -------------->
        <-------------- ack {channelId, upToSeq}

Right after the channel opens each side sends its agreement key ("k").
Once the peer key arrives batches are encrypted; until then they go out
in the clear. Items that fail to decrypt are dropped silently.

Frames for one peer are handled strictly in order: the next frame is not
read until the handler for the previous one returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from balancechain.config import SyncSettings, get_settings
from balancechain.errors import DecryptError, FrameError, IdentityError
from balancechain.identity import AgreementKeypair
from balancechain.ledger import OutboxEntry
from balancechain.utils.timestamps import now_ms

from .crypto import SessionCipher
from .frames import (
    BatchItem,
    FrameType,
    SignalKind,
    ack_frame,
    batch_frame,
    decode_frame,
    int_field,
    key_frame,
    pull_frame,
    str_field,
)
from .handlers import PeerStatus, PullItem, SyncHandler
from .transport import DataChannel, PeerConnection, WebSocketPeerConnection

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "bc"


class SessionState(str, Enum):
    CREATED = "created"
    SIGNALING = "signaling"
    NEGOTIATING = "negotiating"
    OPEN = "open"
    READY = "ready"
    CLOSED = "closed"


_STATE_ORDER = list(SessionState)


class SignalSender(Protocol):
    async def send(self, to: str, data: Any) -> bool:  # pragma: no cover - interface
        ...


ConnectionFactory = Callable[[], PeerConnection]


@dataclass
class PeerSession:
    peer_hid: str
    pc: PeerConnection
    initiator: bool
    state: SessionState = SessionState.CREATED
    channel: Optional[DataChannel] = None
    cipher: Optional[SessionCipher] = None
    peer_pub: Optional[Dict[str, Any]] = None
    opened: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def e2ee(self) -> bool:
        return self.cipher is not None

    def is_open(self) -> bool:
        return (
            self.state is not SessionState.CLOSED
            and self.channel is not None
            and self.channel.ready_state == "open"
        )


class SyncManager:
    """
    Usage:
        sync = SyncManager(
            my_hid=me.hid,
            signaling=client,
            agreement_keys=me.agreement,
            handler=node,
        )
        await sync.dial(peer_hid)
        if await sync.wait_connected(peer_hid):
            await sync.send_pull(peer_hid, channel_id, since_seq)

    Incoming signaling payloads with kind offer/answer/ice must be routed
    to on_signal().
    """

    def __init__(
        self,
        *,
        my_hid: str,
        signaling: SignalSender,
        agreement_keys: AgreementKeypair,
        handler: Optional[SyncHandler] = None,
        settings: Optional[SyncSettings] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ) -> None:
        self.my_hid = my_hid
        self.signaling = signaling
        self.agreement_keys = agreement_keys
        self.handler = handler or SyncHandler()
        self.settings = settings or get_settings().sync
        self._factory = connection_factory or self._default_connection
        self._peers: Dict[str, PeerSession] = {}

    def _default_connection(self) -> PeerConnection:
        return WebSocketPeerConnection(
            bind_host=self.settings.bind_host,
            advertise_hosts=self.settings.advertise_hosts,
            link_timeout_s=self.settings.connect_timeout_s,
        )

    @property
    def peers(self) -> Dict[str, PeerSession]:
        return dict(self._peers)

    def session(self, peer_hid: str) -> Optional[PeerSession]:
        return self._peers.get(peer_hid)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _status(self, s: PeerSession, state: str, error: Optional[str] = None) -> None:
        logger.debug("peer %s: %s%s", s.peer_hid[:12], state, f" ({error})" if error else "")
        try:
            self.handler.on_status(PeerStatus(s.peer_hid, state, error))
        except Exception:
            logger.exception("Status handler failed")

    def _set_state(self, s: PeerSession, state: SessionState) -> None:
        # signaling and the data channel race; never move a session backwards
        current = _STATE_ORDER.index(s.state)
        if state is not SessionState.CREATED and _STATE_ORDER.index(state) <= current:
            return
        s.state = state
        self._status(s, state.value)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _create(self, peer_hid: str, *, initiator: bool) -> PeerSession:
        s = PeerSession(peer_hid=peer_hid, pc=self._factory(), initiator=initiator)
        self._peers[peer_hid] = s

        async def on_candidate(candidate: Dict[str, Any]) -> None:
            await self.signaling.send(peer_hid, {"kind": SignalKind.ICE.value, "candidate": candidate})

        async def on_state(state: str) -> None:
            self._status(s, f"transport:{state}")
            if state in ("failed", "disconnected", "closed"):
                await self._teardown(s)

        async def on_data_channel(channel: DataChannel) -> None:
            self._wire(s, channel)

        s.pc.on_ice_candidate = on_candidate
        s.pc.on_connection_state_change = on_state
        s.pc.on_data_channel = on_data_channel
        self._set_state(s, SessionState.CREATED)
        return s

    async def dial(self, peer_hid: str) -> PeerSession:
        """Start (or reuse) a session to `peer_hid`; this side offers."""
        existing = self._peers.get(peer_hid)
        if existing is not None:
            if existing.is_open():
                return existing
            await self._teardown(existing)

        s = self._create(peer_hid, initiator=True)
        self._wire(s, s.pc.create_data_channel(DATA_CHANNEL_LABEL))
        offer = await s.pc.create_offer()
        self._set_state(s, SessionState.SIGNALING)
        if not await self.signaling.send(peer_hid, {"kind": SignalKind.OFFER.value, "sdp": offer}):
            logger.info("Could not signal offer to %s", peer_hid)
        await s.pc.set_local_description(offer)
        return s

    async def hangup(self, peer_hid: str) -> None:
        s = self._peers.get(peer_hid)
        if s is not None:
            await self._teardown(s)

    async def close_all(self) -> None:
        for s in list(self._peers.values()):
            await self._teardown(s)

    def is_connected(self, peer_hid: str) -> bool:
        s = self._peers.get(peer_hid)
        return s is not None and s.is_open()

    async def wait_connected(self, peer_hid: str, timeout: Optional[float] = None) -> bool:
        """True once the data channel to `peer_hid` is open; False on timeout."""
        s = self._peers.get(peer_hid)
        if s is None:
            return False
        if s.is_open():
            return True
        try:
            await asyncio.wait_for(
                s.opened.wait(),
                timeout if timeout is not None else self.settings.connect_timeout_s,
            )
        except asyncio.TimeoutError:
            return False
        return s.is_open()

    async def _teardown(self, s: PeerSession) -> None:
        if self._peers.get(s.peer_hid) is s:
            del self._peers[s.peer_hid]
        if s.state is SessionState.CLOSED:
            return
        s.state = SessionState.CLOSED
        s.opened.clear()
        await s.pc.close()
        self._status(s, SessionState.CLOSED.value)

    # ------------------------------------------------------------------
    # Signaling
    # ------------------------------------------------------------------

    async def on_signal(self, from_hid: str, data: Any) -> None:
        if not isinstance(data, dict):
            return
        kind = data.get("kind")
        try:
            if kind == SignalKind.OFFER.value:
                await self._on_offer(from_hid, data.get("sdp"))
            elif kind == SignalKind.ANSWER.value:
                s = self._peers.get(from_hid)
                if s is None or not s.initiator:
                    return
                await s.pc.set_remote_description(data.get("sdp"))
                self._set_state(s, SessionState.NEGOTIATING)
            elif kind == SignalKind.ICE.value:
                s = self._peers.get(from_hid)
                if s is None:
                    return
                await s.pc.add_ice_candidate(data.get("candidate"))
        except FrameError as e:
            logger.warning("Bad %s signal from %s: %s", kind, from_hid, e)

    async def _on_offer(self, from_hid: str, sdp: Any) -> None:
        existing = self._peers.get(from_hid)
        if existing is not None:
            if existing.initiator and self.my_hid < from_hid:
                # both sides dialed; the lower HID keeps its own offer even once it has opened
                logger.debug("Ignoring crossing offer from %s", from_hid)
                return
            await self._teardown(existing)

        s = self._create(from_hid, initiator=False)
        self._set_state(s, SessionState.SIGNALING)
        await s.pc.set_remote_description(sdp)
        answer = await s.pc.create_answer()
        await s.pc.set_local_description(answer)
        await self.signaling.send(from_hid, {"kind": SignalKind.ANSWER.value, "sdp": answer})
        self._set_state(s, SessionState.NEGOTIATING)

    # ------------------------------------------------------------------
    # Data channel
    # ------------------------------------------------------------------

    def _wire(self, s: PeerSession, channel: DataChannel) -> None:
        s.channel = channel

        async def on_open() -> None:
            self._set_state(s, SessionState.OPEN)
            s.opened.set()
            await channel.send(key_frame(self.agreement_keys.public_jwk))

        async def on_message(raw: str) -> None:
            await self._on_frame(s, raw)

        async def on_close() -> None:
            await self._teardown(s)

        channel.on_open = on_open
        channel.on_message = on_message
        channel.on_close = on_close

    async def _send(self, peer_hid: str, text: str) -> bool:
        s = self._peers.get(peer_hid)
        if s is None or not s.is_open():
            return False
        return await s.channel.send(text)

    async def send_pull(self, peer_hid: str, channel_id: str, since_seq: int) -> bool:
        return await self._send(peer_hid, pull_frame(channel_id, since_seq))

    async def send_ack(self, peer_hid: str, channel_id: str, up_to_seq: int) -> bool:
        return await self._send(peer_hid, ack_frame(channel_id, up_to_seq))

    async def _on_frame(self, s: PeerSession, raw: str) -> None:
        try:
            frame = decode_frame(raw)
            kind = frame["t"]
            if kind == FrameType.KEY.value:
                self._on_key(s, frame)
            elif kind == FrameType.PULL.value:
                await self._on_pull(s, frame)
            elif kind == FrameType.BATCH.value:
                await self._on_batch(s, frame)
            elif kind == FrameType.ACK.value:
                await self.handler.on_ack(
                    s.peer_hid, str_field(frame, "channelId"), int_field(frame, "upToSeq")
                )
        except FrameError as e:
            logger.debug("Dropping frame from %s: %s", s.peer_hid, e)
        except Exception:
            # a failing handler must not take the session down
            logger.exception("Sync handler failed on frame from %s", s.peer_hid)

    def _on_key(self, s: PeerSession, frame: Dict[str, Any]) -> None:
        pub = frame.get("pub")
        try:
            s.cipher = SessionCipher.derive(self.agreement_keys, pub)
        except (IdentityError, ValueError) as e:
            self._status(s, "e2ee:error", str(e))
            return
        s.peer_pub = pub
        self._set_state(s, SessionState.READY)

    async def _on_pull(self, s: PeerSession, frame: Dict[str, Any]) -> None:
        channel_id = str_field(frame, "channelId")
        since_seq = int_field(frame, "sinceSeq")
        pending = await self.handler.on_pull_request(s.peer_hid, channel_id, since_seq)

        items: List[Dict[str, Any]] = []
        for raw_item in list(pending)[: self.settings.pull_limit]:
            item = _to_batch_item(raw_item)
            items.append(s.cipher.encrypt_item(item) if s.cipher else item.to_wire())
        await s.channel.send(batch_frame(channel_id, items, e2ee=s.e2ee))

    async def _on_batch(self, s: PeerSession, frame: Dict[str, Any]) -> None:
        channel_id = str_field(frame, "channelId")
        encrypted = bool(frame.get("e2ee"))
        raw_items = frame.get("items")

        out: List[BatchItem] = []
        for it in raw_items if isinstance(raw_items, list) else []:
            if not isinstance(it, dict):
                continue
            if encrypted and s.cipher is not None and it.get("iv") and it.get("ct"):
                try:
                    out.append(s.cipher.decrypt_item(it))
                except DecryptError as e:
                    logger.debug("Dropping undecryptable item from %s: %s", s.peer_hid, e)
            elif isinstance(it.get("text"), str):
                try:
                    out.append(BatchItem.from_wire(it))
                except FrameError as e:
                    logger.debug("Dropping malformed item from %s: %s", s.peer_hid, e)

        for item in out:
            if not item.ts:
                item.ts = now_ms()
        await self.handler.on_intent_batch(s.peer_hid, channel_id, out)


def _to_batch_item(item: PullItem) -> BatchItem:
    if isinstance(item, BatchItem):
        return item
    if isinstance(item, OutboxEntry):
        return BatchItem(item.seq_in_channel, item.id, item.text, item.created_at or now_ms())
    return BatchItem(
        seq=int(item["seq"]),
        msg_id=str(item["msgId"]),
        text=str(item.get("text", "")),
        ts=int(item.get("ts") or now_ms()),
    )
