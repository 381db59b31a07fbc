"""
Peer transport.

The session layer talks to a peer connection through a small, WebRTC-shaped
interface: offer/answer descriptions and candidates are exchanged over the
signaling relay, after which a single ordered, reliable data channel carries
session frames directly between the two peers.

WebSocketPeerConnection implements that interface with plain WebSockets:

    initiator                                    responder
    ---------                                    ---------
    create_data_channel("bc")
    create_offer()      -> {type: offer, token}
    set_local_description(offer)
        listen on bind_host:<ephemeral>
        on_ice_candidate({host, port}) ...  ->   set_remote_description(offer)
                                                 create_answer() / set_local_description
                                        <-   answer
    set_remote_description(answer)
                                                 add_ice_candidate(c) -> dial ws://host:port
    verify token                        <-   {"t": "link", "token": ...}
    {"t": "linked"}                     ->
    channel open                                 on_data_channel(channel), channel open

The first candidate that links wins; later ones are closed. The token in
the offer proves the dialer received the offer through signaling.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from balancechain.errors import FrameError
from balancechain.utils.json import json_dumps, safe_json_loads

logger = logging.getLogger(__name__)

LINK_PATH = "/link"

OpenCallback = Callable[[], Awaitable[None]]
MessageCallback = Callable[[str], Awaitable[None]]
CandidateCallback = Callable[[Dict[str, Any]], Awaitable[None]]
StateCallback = Callable[[str], Awaitable[None]]


class DataChannel(Protocol):
    label: str
    on_open: Optional[OpenCallback]
    on_message: Optional[MessageCallback]
    on_close: Optional[OpenCallback]

    @property
    def ready_state(self) -> str:  # pragma: no cover - interface
        ...

    async def send(self, text: str) -> bool:  # pragma: no cover - interface
        ...

    async def close(self) -> None:  # pragma: no cover - interface
        ...


class PeerConnection(Protocol):
    """
    connection_state: new, connecting, connected, disconnected, failed, closed
    """

    on_ice_candidate: Optional[CandidateCallback]
    on_connection_state_change: Optional[StateCallback]
    on_data_channel: Optional[Callable[[DataChannel], Awaitable[None]]]

    @property
    def connection_state(self) -> str:  # pragma: no cover - interface
        ...

    def create_data_channel(self, label: str) -> DataChannel:  # pragma: no cover - interface
        ...

    async def create_offer(self) -> Dict[str, Any]:  # pragma: no cover - interface
        ...

    async def create_answer(self) -> Dict[str, Any]:  # pragma: no cover - interface
        ...

    async def set_local_description(self, desc: Dict[str, Any]) -> None:  # pragma: no cover - interface
        ...

    async def set_remote_description(self, desc: Dict[str, Any]) -> None:  # pragma: no cover - interface
        ...

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:  # pragma: no cover - interface
        ...

    async def close(self) -> None:  # pragma: no cover - interface
        ...


class WebSocketDataChannel:
    """Ordered, reliable channel over one WebSocket connection."""

    def __init__(self, label: str) -> None:
        self.label = label
        self.on_open: Optional[OpenCallback] = None
        self.on_message: Optional[MessageCallback] = None
        self.on_close: Optional[OpenCallback] = None
        self._ws = None
        self._state = "connecting"

    @property
    def ready_state(self) -> str:
        return self._state

    async def send(self, text: str) -> bool:
        if self._state != "open" or self._ws is None:
            return False
        try:
            await self._ws.send(text)
            return True
        except ConnectionClosed:
            return False

    async def close(self) -> None:
        if self._ws is not None and self._state == "open":
            self._state = "closing"
            await self._ws.close()

    async def _attach(self, ws) -> None:
        self._ws = ws
        self._state = "open"
        if self.on_open is not None:
            await self.on_open()

    async def _pump(self) -> None:
        """Deliver messages until the socket closes; one at a time, in order."""
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                if self.on_message is not None:
                    await self.on_message(raw)
        except ConnectionClosed:
            pass
        finally:
            self._state = "closed"
            if self.on_close is not None:
                await self.on_close()


def _host_for_url(host: str) -> str:
    return f"[{host}]" if ":" in host and not host.startswith("[") else host


class WebSocketPeerConnection:
    """
    Usage (both sides are driven by the session layer):
        pc = WebSocketPeerConnection(bind_host="127.0.0.1")
        pc.on_ice_candidate = send_candidate_over_signaling
        dc = pc.create_data_channel("bc")
        await pc.set_local_description(await pc.create_offer())
    """

    def __init__(
        self,
        *,
        bind_host: str = "127.0.0.1",
        advertise_hosts: Iterable[str] = (),
        link_timeout_s: float = 5.0,
    ) -> None:
        self.bind_host = bind_host
        self.advertise_hosts = [h for h in advertise_hosts if h]
        self.link_timeout_s = link_timeout_s

        self.on_ice_candidate: Optional[CandidateCallback] = None
        self.on_connection_state_change: Optional[StateCallback] = None
        self.on_data_channel: Optional[Callable[[DataChannel], Awaitable[None]]] = None

        self._state = "new"
        self._channel: Optional[WebSocketDataChannel] = None
        self._local: Optional[Dict[str, Any]] = None
        self._remote: Optional[Dict[str, Any]] = None
        self._token: Optional[str] = None
        self._server = None
        self._linked = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def connection_state(self) -> str:
        return self._state

    async def _set_state(self, state: str) -> None:
        if state == self._state or self._state == "closed":
            return
        self._state = state
        if self.on_connection_state_change is not None:
            await self.on_connection_state_change(state)

    # ------------------------------------------------------------------
    # Descriptions
    # ------------------------------------------------------------------

    def create_data_channel(self, label: str) -> WebSocketDataChannel:
        self._channel = WebSocketDataChannel(label)
        return self._channel

    async def create_offer(self) -> Dict[str, Any]:
        if self._channel is None:
            raise FrameError("create_data_channel must be called before create_offer")
        self._token = secrets.token_hex(16)
        return {"type": "offer", "token": self._token, "label": self._channel.label}

    async def create_answer(self) -> Dict[str, Any]:
        if self._remote is None or self._remote.get("type") != "offer":
            raise FrameError("No remote offer to answer")
        return {"type": "answer", "token": self._token}

    async def set_local_description(self, desc: Dict[str, Any]) -> None:
        self._local = desc
        if desc.get("type") != "offer":
            return
        await self._set_state("connecting")
        self._server = await websockets.serve(self._accept, self.bind_host, 0)
        for candidate in self._gather_candidates():
            if self.on_ice_candidate is not None:
                await self.on_ice_candidate(candidate)

    async def set_remote_description(self, desc: Dict[str, Any]) -> None:
        if not isinstance(desc, dict) or desc.get("type") not in ("offer", "answer"):
            raise FrameError("Invalid session description")
        token = desc.get("token")
        if not isinstance(token, str) or not token:
            raise FrameError("Session description has no token")

        if desc["type"] == "answer":
            if self._token is None or not hmac.compare_digest(token, self._token):
                raise FrameError("Answer does not match our offer")
        else:
            self._token = token
            await self._set_state("connecting")
        self._remote = desc

    def _gather_candidates(self) -> List[Dict[str, Any]]:
        port = self._server.sockets[0].getsockname()[1]
        hosts = list(self.advertise_hosts)
        if self.bind_host not in ("0.0.0.0", "::", ""):
            hosts.insert(0, self.bind_host)
        if not hosts:
            hosts.append("127.0.0.1")
        return [
            {"candidate": f"ws {host} {port}", "protocol": "ws", "host": host, "port": port}
            for host in dict.fromkeys(hosts)
        ]

    # ------------------------------------------------------------------
    # Candidates (responder side dials)
    # ------------------------------------------------------------------

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        if self._server is not None or self._linked or self._state == "closed":
            return
        if self._remote is None:
            raise FrameError("Candidate received before the offer")
        host = candidate.get("host") if isinstance(candidate, dict) else None
        port = candidate.get("port") if isinstance(candidate, dict) else None
        if not isinstance(host, str) or not isinstance(port, int):
            raise FrameError("Malformed candidate")

        task = asyncio.create_task(self._dial(host, port))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dial(self, host: str, port: int) -> None:
        url = f"ws://{_host_for_url(host)}:{port}{LINK_PATH}"
        try:
            ws = await asyncio.wait_for(websockets.connect(url), self.link_timeout_s)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.debug("Candidate %s unreachable: %s", url, e)
            return

        if self._linked or self._state == "closed":
            await ws.close()
            return
        self._linked = True

        try:
            await ws.send(json_dumps({"t": "link", "token": self._token}))
            reply = safe_json_loads(await asyncio.wait_for(ws.recv(), self.link_timeout_s))
        except (asyncio.TimeoutError, ConnectionClosed) as e:
            logger.debug("Link over %s failed: %s", url, e)
            reply = None
        if not isinstance(reply, dict) or reply.get("t") != "linked":
            self._linked = False
            await ws.close()
            return

        channel = WebSocketDataChannel(str((self._remote or {}).get("label") or "data"))
        self._channel = channel
        await self._set_state("connected")
        if self.on_data_channel is not None:
            await self.on_data_channel(channel)
        await channel._attach(ws)
        await self._run_channel(channel)

    # ------------------------------------------------------------------
    # Listener (initiator side accepts)
    # ------------------------------------------------------------------

    async def _accept(self, ws) -> None:
        if ws.request.path.rstrip("/") != LINK_PATH:
            await ws.close(1008, "unknown path")
            return
        try:
            hello = safe_json_loads(await asyncio.wait_for(ws.recv(), self.link_timeout_s))
        except (asyncio.TimeoutError, ConnectionClosed):
            return

        token = hello.get("token") if isinstance(hello, dict) else None
        if (
            self._linked
            or self._channel is None
            or not isinstance(token, str)
            or self._token is None
            or not hmac.compare_digest(token, self._token)
        ):
            await ws.close(1008, "rejected")
            return

        self._linked = True
        await ws.send(json_dumps({"t": "linked"}))
        await self._set_state("connected")
        await self._channel._attach(ws)
        # the link lives as long as this handler does
        await self._run_channel(self._channel)

    async def _run_channel(self, channel: WebSocketDataChannel) -> None:
        await channel._pump()
        await self._set_state("disconnected")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._state == "closed":
            return
        self._state = "closed"
        if self._channel is not None:
            self._channel.on_close = None
            await self._channel.close()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        if self._server is not None:
            self._server.close()
            self._server = None
