"""Bulk pipe set-up: one-shot signalling and the data channel wrapper."""

from __future__ import annotations
import asyncio
import logging
from typing import List, Optional

import httpx

from .api_client import exchange_description, post_description
from .config import LOW_WATER_MARK
from .errors import DialError, ProtocolError
from .models import IceServer
from .transport import DataChannel, PeerConnection, TransportProvider

logger = logging.getLogger(__name__)


class Conn:
    """A peer connection with its single data channel.

    ``opened`` resolves when the channel opens and fails if the transport
    fails first; whichever happens first wins.
    """

    def __init__(self, pc: PeerConnection) -> None:
        loop = asyncio.get_running_loop()
        self.opened: asyncio.Future = loop.create_future()
        # Unbounded: the channel pushes messages and has no way to pause them.
        self.inbox: asyncio.Queue = asyncio.Queue()
        # Guards the buffered amount check in the pump.
        self.flushc = asyncio.Condition()
        self._pending = set()
        self.attach(pc)

    def attach(self, pc: PeerConnection) -> None:
        """Take ownership of ``pc`` and create the data channel on it."""
        channel = pc.create_data_channel("data")
        channel.buffered_amount_low_threshold = LOW_WATER_MARK
        self.pc = pc
        self.channel: DataChannel = channel
        self.closed = False

        # Events from a discarded connection are ignored.
        def current(cb):
            def wrapper(*args):
                if self.channel is channel:
                    cb(*args)
            return wrapper

        channel.on_open(current(self._open))
        channel.on_message(current(self.inbox.put_nowait))
        channel.on_close(current(self._closed))
        channel.on_buffered_amount_low(current(self._flushed))
        pc.on_ice_connection_state_change(current(self._ice_state))

    def _open(self) -> None:
        if not self.opened.done():
            self.opened.set_result(None)

    def _closed(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)
        # Wake a writer held by backpressure.
        self._flushed()

    def _ice_state(self, state: str) -> None:
        logger.debug("ice connection state: %s", state)
        if state == "failed":
            self.error(DialError("ice connection failed"))

    def error(self, err: Exception) -> None:
        logger.debug("transport error: %s", err)
        if not self.opened.done():
            self.opened.set_exception(err)

    def _flushed(self) -> None:
        task = asyncio.ensure_future(self._notify_flushed())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _notify_flushed(self) -> None:
        async with self.flushc:
            self.flushc.notify_all()

    async def wait_opened(self) -> "Conn":
        await self.opened
        return self


async def dial(
    slot: str,
    sigserv: str,
    ice_servers: List[IceServer],
    provider: Optional[TransportProvider] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Conn:
    """Connect to the peer waiting on ``slot`` and return the open channel."""
    if provider is None:
        from .rtc import AiortcProvider
        provider = AiortcProvider()

    conn = Conn(provider.new_peer_connection(ice_servers))
    offer = await conn.pc.create_offer()
    await conn.pc.set_local_description(offer)
    remote = await exchange_description(sigserv, slot, conn.pc.local_description or offer, transport)

    if remote.type == "offer":
        # No rollback support: start over with a fresh peer connection and
        # answer the peer's offer.
        old = conn.pc
        conn.attach(provider.new_peer_connection(ice_servers))
        await old.close()
        await conn.pc.set_remote_description(remote)
        answer = await conn.pc.create_answer()
        await conn.pc.set_local_description(answer)
        await post_description(sigserv, slot, conn.pc.local_description or answer, transport)
        logger.info("got counter offer, accepted")
    elif remote.type == "answer":
        await conn.pc.set_remote_description(remote)
        logger.info("got answer, accepted")
    else:
        raise ProtocolError(f"unknown description type: {remote.type}")

    return await conn.wait_opened()
