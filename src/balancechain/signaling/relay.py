"""
Signaling relay.

A stateless router: each connection announces its HID with a hello, after
which `send` frames are forwarded to the connection registered under the
target HID. Nothing is stored; if the target is not connected the sender
gets a nack.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed

from balancechain.config import RelaySettings, get_settings
from balancechain.utils.json import json_dumps, safe_json_loads

logger = logging.getLogger(__name__)


class RelayServer:
    """
    Usage:
        relay = RelayServer(port=0)
        await relay.start()
        url = relay.url        # ws://127.0.0.1:<port>/signal
        ...
        await relay.stop()
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        *,
        path: Optional[str] = None,
        settings: Optional[RelaySettings] = None,
    ) -> None:
        cfg = settings or get_settings().relay
        self.host = host if host is not None else cfg.host
        self.port = port if port is not None else cfg.port
        self.path = "/" + (path if path is not None else cfg.path).strip("/")
        self._clients: Dict[str, ServerConnection] = {}
        self._server = None

    @property
    def clients(self) -> Dict[str, ServerConnection]:
        return dict(self._clients)

    @property
    def bound_port(self) -> int:
        if self._server is None:
            return self.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def url(self) -> str:
        host = "127.0.0.1" if self.host in ("0.0.0.0", "", "::") else self.host
        return f"ws://{host}:{self.bound_port}{self.path}"

    async def start(self) -> None:
        self._server = await websockets.serve(self._handle, self.host, self.port)
        logger.info("Relay listening on %s", self.url)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._clients.clear()
        logger.info("Relay stopped")

    async def serve_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Future()
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle(self, ws: ServerConnection) -> None:
        if ws.request.path.split("?", 1)[0].rstrip("/") != self.path:
            await ws.close(1008, "unknown path")
            return

        hid: Optional[str] = None
        try:
            async for raw in ws:
                frame = safe_json_loads(raw)
                if not isinstance(frame, dict):
                    continue
                kind = frame.get("t")

                if kind == "hello" and isinstance(frame.get("hid"), str) and frame["hid"]:
                    if hid is not None and self._clients.get(hid) is ws:
                        del self._clients[hid]
                    hid = frame["hid"]
                    self._clients[hid] = ws
                    logger.info("Peer online: %s", hid)
                    await ws.send(json_dumps({"t": "hello", "ok": True, "hid": hid}))

                elif kind == "send" and hid is not None:
                    to = frame.get("to")
                    if not isinstance(to, str):
                        continue
                    await self._forward(ws, hid, to, frame.get("data"))
        except ConnectionClosed:
            pass
        finally:
            if hid is not None and self._clients.get(hid) is ws:
                del self._clients[hid]
                logger.info("Peer offline: %s", hid)

    async def _forward(self, ws: ServerConnection, sender: str, to: str, data) -> None:
        target = self._clients.get(to)
        if target is not None:
            try:
                await target.send(json_dumps({"t": "msg", "from": sender, "data": data}))
                return
            except ConnectionClosed:
                logger.debug("Target %s went away mid-send", to)
        await ws.send(json_dumps({"t": "nack", "to": to, "reason": "offline"}))
