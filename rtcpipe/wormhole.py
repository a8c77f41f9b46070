"""Secure rendezvous: drives a handshake Session over a signalling channel.

Typical use::

    wh = await Wormhole.dial(server, code)
    code, pc = await wh.signal()      # show the code, configure pc
    fingerprint = await wh.finish()   # peers authenticated
    ...                               # wait for the transport to connect
    await wh.close()
"""

from __future__ import annotations
import asyncio
import logging
import secrets
from functools import partial
from typing import Optional, Set, Tuple

from . import closer
from .codec import PASS_LEN
from .crypto import fingerprint
from .deferred import DeferredQueue
from .errors import ProtocolError
from .handshake import (
    AddCandidate,
    ApplyAnswer,
    ApplyOffer,
    Close,
    Closed,
    CreateOffer,
    Defer,
    Effect,
    Event,
    Fail,
    Inbound,
    LocalCandidate,
    MakeTransport,
    ReleaseDeferred,
    ResolveDone,
    ResolveSignal,
    Send,
    SendSealed,
    Session,
    State,
    TransportReady,
)
from .models import SessionDescription
from .signaling import ChannelClosed, SignalingChannel, WebSocketChannel
from .transport import PeerConnection, TransportProvider

logger = logging.getLogger(__name__)


def _consume(fut: asyncio.Future) -> None:
    # Failures are also reported through the other future; don't warn about
    # the one nobody awaited.
    if not fut.cancelled():
        fut.exception()


class Wormhole:
    def __init__(self, channel: SignalingChannel, session: Session,
                 provider: TransportProvider) -> None:
        self.channel = channel
        self.session = session
        self.provider = provider
        self.pc: Optional[PeerConnection] = None

        loop = asyncio.get_running_loop()
        self._signalled: asyncio.Future = loop.create_future()
        self._done: asyncio.Future = loop.create_future()
        self._signalled.add_done_callback(_consume)
        self._done.add_done_callback(_consume)

        self._deferred = DeferredQueue()
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._closing = False

    @classmethod
    async def dial(cls, server: str, code: str = "",
                   provider: Optional[TransportProvider] = None) -> "Wormhole":
        """Connect to the broker and start the handshake.

        Without a code a new slot is requested and ``signal()`` returns the
        code to share. With a code the slot it names is joined.
        """
        if code:
            session = Session.joiner(code)
            logger.info("dialling slot: %d", session.slot)
        else:
            session = Session.creator(secrets.token_bytes(PASS_LEN))
            logger.info("requesting slot")
        if provider is None:
            from .rtc import AiortcProvider
            provider = AiortcProvider()
        channel = await WebSocketChannel.connect(server, session.slot)
        wh = cls(channel, session, provider)
        wh.start()
        return wh

    @property
    def state(self) -> State:
        return self.session.state

    def start(self) -> None:
        self._task = asyncio.ensure_future(self.run())

    async def run(self) -> None:
        """Feed broker messages to the session until it ends."""
        try:
            while self.session.state is not State.ERROR:
                try:
                    data = await self.channel.recv()
                except ChannelClosed as e:
                    if not self._closing:
                        await self.apply(Closed(e.code, e.reason))
                    return
                await self.apply(Inbound(data))
        except Exception as e:
            logger.exception("signalling failed")
            async with self._lock:
                await self._abort(str(e))

    async def signal(self) -> Tuple[Optional[str], PeerConnection]:
        """Wait for the slot; returns the code to share (creator only) and pc."""
        return await self._signalled

    async def finish(self) -> bytes:
        """Tell the session pc is configured; wait for the peer's key fingerprint.

        Raises ProtocolError if the handshake fails.
        """
        await self.apply(TransportReady())
        return await self._done

    async def close(self) -> None:
        """Leave the broker, reporting how the transport connected if it did."""
        if self._closing:
            return
        code = None
        if self.pc is not None:
            code = await closer.classify(self.pc)
        if self._closing:
            return
        self._closing = True
        await self.channel.close(code if code is not None else 1000)

    async def apply(self, event: Event) -> None:
        async with self._lock:
            try:
                for effect in self.session.handle(event):
                    await self._execute(effect)
            except Exception as e:
                logger.exception("handshake step failed")
                await self._abort(str(e) or type(e).__name__)

    async def _abort(self, reason: str) -> None:
        # Caller holds the lock.
        for effect in self.session.abort(reason):
            try:
                await self._execute(effect)
            except Exception as e:
                logger.debug("could not report failure to the peer: %s", e)
        self._reject(reason)

    async def _execute(self, effect: Effect) -> None:
        if isinstance(effect, Send):
            await self.channel.send(effect.data)
        elif isinstance(effect, SendSealed):
            await self.channel.send(self.session.seal(effect.payload))
        elif isinstance(effect, MakeTransport):
            self.pc = self.provider.new_peer_connection(effect.ice_servers)
            self.pc.on_candidate(self._on_local_candidate)
        elif isinstance(effect, ResolveSignal):
            if not self._signalled.done():
                self._signalled.set_result((effect.code, self.pc))
        elif isinstance(effect, CreateOffer):
            offer = await self.pc.create_offer()
            await self.pc.set_local_description(offer)
            await self._send_description(self.pc.local_description or offer)
            logger.info("sent offer")
        elif isinstance(effect, ApplyAnswer):
            await self.pc.set_remote_description(effect.desc)
        elif isinstance(effect, Defer):
            await self._deferred.submit(partial(self._run_deferred, effect.action))
        elif isinstance(effect, ReleaseDeferred):
            await self._deferred.release()
        elif isinstance(effect, ResolveDone):
            self._resolve_done()
        elif isinstance(effect, Fail):
            self._reject(effect.reason)
        elif isinstance(effect, Close):
            self._closing = True
            await self.channel.close(effect.code)
        else:
            raise TypeError(f"unknown effect {effect!r}")

    async def _run_deferred(self, action) -> None:
        if self.session.state is State.ERROR:
            return
        if isinstance(action, ApplyOffer):
            await self.pc.set_remote_description(action.desc)
            answer = await self.pc.create_answer()
            await self.pc.set_local_description(answer)
            await self._send_description(self.pc.local_description or answer)
            logger.info("sent answer")
            self._resolve_done()
        elif isinstance(action, AddCandidate):
            await self.pc.add_candidate(action.candidate)

    async def _send_description(self, desc: SessionDescription) -> None:
        await self.channel.send(self.session.seal(desc.model_dump_json().encode("utf-8")))

    def _on_local_candidate(self, candidate) -> None:
        task = asyncio.ensure_future(self.apply(LocalCandidate(candidate)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _resolve_done(self) -> None:
        if not self._done.done():
            self._done.set_result(fingerprint(self.session.key))

    def _reject(self, reason: str) -> None:
        for fut in (self._signalled, self._done):
            if not fut.done():
                fut.set_exception(ProtocolError(reason))
