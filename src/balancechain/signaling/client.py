"""
Signaling client.

Keeps one WebSocket open to a relay (rotating through the configured URLs)
and reconnects with exponential backoff. The relay only routes: every frame
sent here is addressed to a HID and delivered verbatim, or answered with a
nack when the recipient is offline.

Frames (client -> relay):
    {"t": "hello", "hid": <my hid>}
    {"t": "send", "to": <hid>, "data": <any>}

Frames (relay -> client):
    {"t": "hello", "ok": true, "hid": <my hid>}
    {"t": "msg", "from": <hid>, "data": <any>}
    {"t": "nack", "to": <hid>, "reason": "offline"}

Incoming messages are handed to `on_message` one at a time, in arrival
order; the next frame is not read until the callback returns.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from balancechain.config import SignalingSettings, get_settings
from balancechain.utils.json import json_dumps, safe_json_loads

logger = logging.getLogger(__name__)

SIGNAL_PATH = "/signal"


@dataclass
class SignalMessage:
    from_hid: str
    data: Any


@dataclass
class SignalStatus:
    """
    Connection lifecycle event.

    state is one of: connecting, open, error, closed, retrying, nack, stopped
    """

    state: str
    url: Optional[str] = None
    reason: Optional[str] = None
    wait_ms: Optional[int] = None
    to: Optional[str] = None
    error: Optional[str] = None


def normalize_url(url: str) -> str:
    """
    Turn whatever the user configured into a relay endpoint.

        relay.example.org         -> wss://relay.example.org/signal
        https://relay.example.org -> wss://relay.example.org/signal
        ws://127.0.0.1:8787       -> ws://127.0.0.1:8787/signal
    """
    url = (url or "").strip()
    if not url:
        raise ValueError("Empty signaling URL")
    if "://" not in url:
        url = "wss://" + url

    parts = urlsplit(url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    path = parts.path.rstrip("/")
    if not path.endswith(SIGNAL_PATH):
        path = path + SIGNAL_PATH
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))


class Backoff:
    """Exponential reconnect delay: initial, initial*factor, ... capped."""

    def __init__(self, initial_ms: int = 250, max_ms: int = 8000, factor: float = 1.8) -> None:
        self.initial_ms = initial_ms
        self.max_ms = max_ms
        self.factor = factor
        self._next = initial_ms

    def next_delay_ms(self) -> int:
        delay = int(min(self._next, self.max_ms))
        self._next = min(self._next * self.factor, self.max_ms)
        return delay

    def reset(self) -> None:
        self._next = self.initial_ms


MessageCallback = Callable[[SignalMessage], Awaitable[None]]
StatusCallback = Callable[[SignalStatus], None]


class SignalingClient:
    """
    Usage:
        client = SignalingClient(["ws://127.0.0.1:8787"], hid=me.hid, on_message=handle)
        await client.start()
        await client.send(peer_hid, {"kind": "offer", ...})
        await client.stop()
    """

    def __init__(
        self,
        urls: Iterable[str],
        *,
        hid: str,
        on_message: Optional[MessageCallback] = None,
        on_status: Optional[StatusCallback] = None,
        settings: Optional[SignalingSettings] = None,
    ) -> None:
        self._settings = settings or get_settings().signaling
        self._urls: List[str] = [normalize_url(u) for u in urls]
        if not self._urls:
            raise ValueError("At least one signaling URL is required")
        self.hid = hid
        self.on_message = on_message
        self.on_status = on_status

        self._backoff = Backoff(
            self._settings.backoff_initial_ms,
            self._settings.backoff_max_ms,
            self._settings.backoff_factor,
        )
        self._url_index = 0
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = False
        self._opened = asyncio.Event()

    @property
    def urls(self) -> List[str]:
        return list(self._urls)

    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._task = asyncio.create_task(self._run(), name=f"signaling:{self.hid}")

    async def stop(self) -> None:
        self._stopping = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._emit(SignalStatus("stopped"))

    async def wait_open(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, to: str, data: Any) -> bool:
        """Route `data` to `to` through the relay. False when not connected."""
        if not to or not self.is_open():
            return False
        try:
            await self._ws.send(json_dumps({"t": "send", "to": to, "data": data}))
            return True
        except ConnectionClosed:
            return False

    async def broadcast(self, to: Iterable[str], data: Any) -> bool:
        """
        Send the same data to several HIDs. Duplicates are dropped and the
        recipient list is capped. True when at least one send went out.
        """
        recipients = list(dict.fromkeys(h for h in to if h))[: self._settings.max_broadcast]
        sent = False
        for hid in recipients:
            if await self.send(hid, data):
                sent = True
        return sent

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    def _next_url(self) -> str:
        url = self._urls[self._url_index % len(self._urls)]
        self._url_index += 1
        return url

    def _emit(self, status: SignalStatus) -> None:
        logger.debug("signaling %s: %s", self.hid[:12], status)
        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception:
                logger.exception("Signaling status callback failed")

    async def _run(self) -> None:
        while not self._stopping:
            url = self._next_url()
            self._emit(SignalStatus("connecting", url=url))
            reason = "closed"
            try:
                async with websockets.connect(url) as ws:
                    self._ws = ws
                    self._backoff.reset()
                    await ws.send(json_dumps({"t": "hello", "hid": self.hid}))
                    self._opened.set()
                    self._emit(SignalStatus("open", url=url))
                    async for raw in ws:
                        await self._dispatch(raw)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                reason = "error"
                self._emit(SignalStatus("error", url=url, error=str(e)))
            finally:
                self._ws = None
                self._opened.clear()

            if self._stopping:
                break
            self._emit(SignalStatus("closed", url=url))
            wait = self._backoff.next_delay_ms()
            self._emit(SignalStatus("retrying", url=url, reason=reason, wait_ms=wait))
            await asyncio.sleep(wait / 1000.0)

    async def _dispatch(self, raw: Any) -> None:
        frame = safe_json_loads(raw)
        if not isinstance(frame, dict):
            logger.debug("Dropping unparseable signaling frame")
            return

        kind = frame.get("t")
        if kind == "msg":
            sender = frame.get("from")
            if not isinstance(sender, str) or self.on_message is None:
                return
            try:
                await self.on_message(SignalMessage(sender, frame.get("data")))
            except Exception:
                logger.exception("Signaling message handler failed (from=%s)", sender)
        elif kind == "nack":
            self._emit(SignalStatus("nack", to=frame.get("to"), reason=frame.get("reason")))
        elif kind == "hello":
            logger.debug("Relay acknowledged hello for %s", frame.get("hid"))
