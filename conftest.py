"""In-memory stand-ins for the WebRTC stack and the broker."""

import asyncio
import itertools
import json
from collections import deque
from typing import Any, Callable, Dict, List, Optional

import pytest

from rtcpipe.errors import WriteError
from rtcpipe.models import IceServer, SessionDescription
from rtcpipe.signaling import ChannelClosed, SignalingChannel
from rtcpipe.transport import DataChannel, PeerConnection, TransportProvider

_ids = itertools.count(1)


class FakeChannel(DataChannel):
    """A data channel whose wire hands one queued message per loop turn to its peer."""

    def __init__(self, log: Optional[list] = None) -> None:
        self.peer: Optional["FakeChannel"] = None
        self.log = log if log is not None else []
        self.closed = False
        self.writes = 0
        self.max_buffered_at_write = 0
        self.writes_above_threshold = 0
        self._buffered = 0
        self._threshold = 0
        self._queue: deque = deque()
        self._wire: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[Callable]] = {
            "open": [], "message": [], "close": [], "low": [],
        }

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    @property
    def buffered_amount_low_threshold(self) -> int:
        return self._threshold

    @buffered_amount_low_threshold.setter
    def buffered_amount_low_threshold(self, value: int) -> None:
        self._threshold = value

    def send(self, data: bytes) -> int:
        if self.closed:
            raise WriteError("channel closed")
        self.writes += 1
        self.max_buffered_at_write = max(self.max_buffered_at_write, self._buffered)
        if self._buffered > self._threshold:
            self.writes_above_threshold += 1
        self._buffered += len(data)
        self._queue.append(data)
        if self._wire is None or self._wire.done():
            self._wire = asyncio.ensure_future(self._run_wire())
        return len(data)

    async def _run_wire(self) -> None:
        while self._queue:
            await asyncio.sleep(0)
            data = self._queue.popleft()
            before = self._buffered
            self._buffered -= len(data)
            if before > self._threshold >= self._buffered:
                self.emit("low")
            if self.peer is not None and not self.peer.closed:
                self.peer.emit("message", data)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.log.append(("channel.close", self._buffered))
        self.emit("close")
        if self.peer is not None and not self.peer.closed:
            self.peer.closed = True
            self.peer.emit("close")

    def emit(self, event: str, *args: Any) -> None:
        for cb in list(self._handlers[event]):
            cb(*args)

    def on_open(self, cb):
        self._handlers["open"].append(cb)

    def on_message(self, cb):
        self._handlers["message"].append(cb)

    def on_close(self, cb):
        self._handlers["close"].append(cb)

    def on_buffered_amount_low(self, cb):
        self._handlers["low"].append(cb)


def link(a: FakeChannel, b: FakeChannel) -> None:
    a.peer, b.peer = b, a


class FakePeerConnection(PeerConnection):
    def __init__(self, provider: "FakeProvider", ice_servers: List[IceServer]) -> None:
        self.id = next(_ids)
        self.provider = provider
        self.ice_servers = ice_servers
        self.channel = FakeChannel(provider.log)
        self.calls: List[str] = []
        self.local: Optional[SessionDescription] = None
        self.remote: Optional[SessionDescription] = None
        self.candidates: List[dict] = []
        self.stats: List[dict] = []
        self.state = "new"
        self.closed = False
        self._state_cbs: List[Callable] = []
        self._candidate_cbs: List[Callable] = []

    def create_data_channel(self, label: str) -> DataChannel:
        self.calls.append("create_data_channel")
        return self.channel

    async def create_offer(self) -> SessionDescription:
        self.calls.append("create_offer")
        return SessionDescription(type="offer", sdp=f"offer-{self.id}")

    async def create_answer(self) -> SessionDescription:
        self.calls.append("create_answer")
        return SessionDescription(type="answer", sdp=f"answer-{self.id}")

    async def set_local_description(self, desc: SessionDescription) -> None:
        self.calls.append("set_local_description")
        self.local = desc

    async def set_remote_description(self, desc: SessionDescription) -> None:
        self.calls.append("set_remote_description")
        self.remote = desc
        if self.provider.open_on_remote:
            asyncio.get_running_loop().call_soon(self.channel.emit, "open")

    @property
    def local_description(self) -> Optional[SessionDescription]:
        return self.local

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        self.calls.append("add_candidate")
        self.candidates.append(candidate)

    @property
    def ice_connection_state(self) -> str:
        return self.state

    def set_state(self, state: str) -> None:
        self.state = state
        for cb in self._state_cbs:
            cb(state)

    def on_ice_connection_state_change(self, cb):
        self._state_cbs.append(cb)

    def on_candidate(self, cb):
        self._candidate_cbs.append(cb)

    def trickle(self, candidate: dict) -> None:
        for cb in self._candidate_cbs:
            cb(candidate)

    async def get_stats(self) -> List[Dict[str, Any]]:
        return self.stats

    async def close(self) -> None:
        self.closed = True
        self.provider.log.append(("pc.close", self.id))


class FakeProvider(TransportProvider):
    def __init__(self, open_on_remote: bool = True) -> None:
        self.open_on_remote = open_on_remote
        self.created: List[FakePeerConnection] = []
        self.log: list = []

    def new_peer_connection(self, ice_servers: List[IceServer]) -> PeerConnection:
        pc = FakePeerConnection(self, ice_servers)
        self.created.append(pc)
        return pc


class FakeSignaling(SignalingChannel):
    """One end of an in-memory broker connection."""

    def __init__(self) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.peer: Optional["FakeSignaling"] = None
        self.sent: list = []
        self.closed_with: Optional[int] = None

    async def send(self, data) -> None:
        if self.closed_with is not None:
            raise ChannelClosed(self.closed_with)
        self.sent.append(data)
        if self.peer is not None:
            self.peer.inbox.put_nowait(data)

    async def recv(self):
        item = await self.inbox.get()
        if isinstance(item, ChannelClosed):
            raise item
        return item

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code
        self.inbox.put_nowait(ChannelClosed(code))
        if self.peer is not None:
            self.peer.inbox.put_nowait(ChannelClosed(4004))


def broker_pair(slot: int = 7):
    """Creator and joiner ends, pre-loaded with the broker's announcements."""
    ice = [{"URLs": ["stun:stun.example.org"], "Username": "", "Credential": ""}]
    creator, joiner = FakeSignaling(), FakeSignaling()
    creator.peer, joiner.peer = joiner, creator
    creator.inbox.put_nowait(json.dumps({"slot": str(slot), "iceServers": ice}))
    joiner.inbox.put_nowait(json.dumps({"iceServers": ice}))
    return creator, joiner


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def broker():
    return broker_pair


@pytest.fixture
def linked_pcs(provider):
    """Two peer connections whose data channels talk to each other."""
    a = provider.new_peer_connection([])
    b = provider.new_peer_connection([])
    link(a.channel, b.channel)
    return a, b


@pytest.fixture
def make_provider():
    return FakeProvider
