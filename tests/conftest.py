"""
Shared fixtures.

Async code is driven with asyncio.run() from plain synchronous tests.

The loopback transport below pairs two SyncManagers in-process: signaling
payloads go through per-recipient queues (delivered in order, one at a
time, like the relay client) and data channels are connected directly.
"""

import asyncio
import itertools
import shutil
import tempfile
from typing import Any, Dict, List, Optional

import pytest

from balancechain.config import SyncSettings
from balancechain.identity import Identity
from balancechain.storage import MemoryStorage


@pytest.fixture
def tmp_dir():
    """Create a temporary directory for test data."""
    d = tempfile.mkdtemp(prefix="balancechain_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def identity():
    return Identity.generate("HIK-test-alice")


@pytest.fixture
def other_identity():
    return Identity.generate("HIK-test-bob")


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def sync_settings():
    return SyncSettings(pull_limit=200, connect_timeout_s=2.0)


# ===========================================================================
# Loopback transport
# ===========================================================================


class LoopbackChannel:
    def __init__(self, label: str) -> None:
        self.label = label
        self.on_open = None
        self.on_message = None
        self.on_close = None
        self.peer: Optional["LoopbackChannel"] = None
        self.sent: List[str] = []
        self._state = "connecting"
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def ready_state(self) -> str:
        return self._state

    async def send(self, text: str) -> bool:
        if self._state != "open" or self.peer is None:
            return False
        self.sent.append(text)
        self.peer._inbox.put_nowait(text)
        return True

    async def close(self) -> None:
        if self._state == "closed":
            return
        self._state = "closed"
        if self.peer is not None:
            self.peer._inbox.put_nowait(None)

    async def _open(self) -> None:
        self._state = "open"
        self._pump_task = asyncio.create_task(self._pump())
        if self.on_open is not None:
            await self.on_open()

    async def _pump(self) -> None:
        while True:
            text = await self._inbox.get()
            if text is None:
                self._state = "closed"
                if self.on_close is not None:
                    await self.on_close()
                return
            if self.on_message is not None:
                await self.on_message(text)


class LoopbackNetwork:
    """Token -> offering connection, so answers can find their initiator."""

    def __init__(self) -> None:
        self.offers: Dict[str, "LoopbackPeerConnection"] = {}
        self._ids = itertools.count(1)

    def connection(self) -> "LoopbackPeerConnection":
        return LoopbackPeerConnection(self)


class LoopbackPeerConnection:
    def __init__(self, network: LoopbackNetwork) -> None:
        self.network = network
        self.on_ice_candidate = None
        self.on_connection_state_change = None
        self.on_data_channel = None
        self.channel: Optional[LoopbackChannel] = None
        self.remote: Optional[Dict[str, Any]] = None
        self.token: Optional[str] = None
        self._state = "new"

    @property
    def connection_state(self) -> str:
        return self._state

    def create_data_channel(self, label: str) -> LoopbackChannel:
        self.channel = LoopbackChannel(label)
        return self.channel

    async def create_offer(self) -> Dict[str, Any]:
        self.token = f"tok-{next(self.network._ids)}"
        return {"type": "offer", "token": self.token, "label": self.channel.label}

    async def create_answer(self) -> Dict[str, Any]:
        return {"type": "answer", "token": self.remote["token"]}

    async def set_local_description(self, desc: Dict[str, Any]) -> None:
        if desc["type"] == "offer":
            self.network.offers[self.token] = self
            if self.on_ice_candidate is not None:
                await self.on_ice_candidate({"host": "loopback", "port": 1})

    async def set_remote_description(self, desc: Dict[str, Any]) -> None:
        self.remote = desc

    async def add_ice_candidate(self, candidate: Dict[str, Any]) -> None:
        if self.token is not None or self.channel is not None:
            return
        initiator = self.network.offers.pop(self.remote["token"], None)
        if initiator is None or initiator.channel is None:
            return
        mine = LoopbackChannel(self.remote.get("label", "data"))
        mine.peer, initiator.channel.peer = initiator.channel, mine
        self.channel = mine
        self._state = initiator._state = "connected"
        if self.on_data_channel is not None:
            await self.on_data_channel(mine)
        await initiator.channel._open()
        await mine._open()

    async def close(self) -> None:
        self._state = "closed"
        if self.channel is not None:
            await self.channel.close()


class QueueSignaling:
    """In-process stand-in for the relay: per-recipient ordered delivery."""

    def __init__(self, hub: "SignalHub", hid: str) -> None:
        self.hub = hub
        self.hid = hid
        self.sent: List[Dict[str, Any]] = []

    async def send(self, to: str, data: Any) -> bool:
        self.sent.append({"to": to, "data": data})
        queue = self.hub.queues.get(to)
        if queue is None:
            return False
        queue.put_nowait((self.hid, data))
        return True


class SignalHub:
    def __init__(self) -> None:
        self.queues: Dict[str, asyncio.Queue] = {}
        self.tasks: List[asyncio.Task] = []

    def client(self, hid: str) -> QueueSignaling:
        self.queues[hid] = asyncio.Queue()
        return QueueSignaling(self, hid)

    def attach(self, hid: str, manager) -> None:
        async def pump() -> None:
            while True:
                sender, data = await self.queues[hid].get()
                await manager.on_signal(sender, data)

        self.tasks.append(asyncio.create_task(pump()))

    async def close(self) -> None:
        for t in self.tasks:
            t.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)


@pytest.fixture
def loopback():
    return LoopbackNetwork()


@pytest.fixture
def signal_hub():
    return SignalHub()
