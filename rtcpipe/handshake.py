"""Rendezvous handshake as an explicit state machine.

:meth:`Session.handle` takes one event and returns the effects to perform,
in order. It never touches the network or the peer connection itself;
:class:`rtcpipe.wormhole.Wormhole` executes the effects.

The joining side (the one holding a code) sends the first PAKE message.
The creating side replies with the second one and, as soon as the caller
has finished configuring its peer connection, sends the sealed offer. The
joiner answers, after which both sides trickle candidates until the
transport is up.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from . import codec
from .crypto import KeyExchange, seal, unseal
from .errors import BadKey, KeyExchangeError, ProtocolError
from .models import Announcement, Candidate, IceServer, SessionDescription
from .signaling import CloseCode

logger = logging.getLogger(__name__)


class Role(str, Enum):
    CREATOR = "creator"
    JOINER = "joiner"


class State(str, Enum):
    ANNOUNCING = "announcing"
    JOINING = "joining"
    AWAITING_PAKE_MSG1 = "awaiting_pake_msg1"
    AWAITING_TRANSPORT_READY = "awaiting_transport_ready"
    AWAITING_PAKE_MSG2 = "awaiting_pake_msg2"
    AWAITING_OFFER = "awaiting_offer"
    AWAITING_ANSWER = "awaiting_answer"
    AWAITING_CANDIDATES = "awaiting_candidates"
    ERROR = "error"


# States in which a session key exists.
KEYED_STATES = frozenset({
    State.AWAITING_TRANSPORT_READY,
    State.AWAITING_OFFER,
    State.AWAITING_ANSWER,
    State.AWAITING_CANDIDATES,
})

# Broker close codes that end the session, and what to tell the caller.
CLOSE_REASONS = {
    CloseCode.NO_SUCH_SLOT: "no such slot",
    CloseCode.SLOT_TIMED_OUT: "timed out",
    CloseCode.NO_MORE_SLOTS: "could not get slot",
    CloseCode.WRONG_PROTOCOL: "wrong protocol version, must update",
}

# The peer leaving after the handshake is routine; 1001 is what some
# browsers send when a download starts.
IGNORED_CLOSE_CODES = frozenset({CloseCode.PEER_HUNG_UP, 1001})

BYE = b"bye"


# Events

@dataclass(frozen=True)
class Inbound:
    data: Union[str, bytes]


@dataclass(frozen=True)
class TransportReady:
    pass


@dataclass(frozen=True)
class LocalCandidate:
    candidate: Dict[str, Any]


@dataclass(frozen=True)
class Closed:
    code: int
    reason: str = ""


Event = Union[Inbound, TransportReady, LocalCandidate, Closed]


# Effects

@dataclass(frozen=True)
class MakeTransport:
    ice_servers: List[IceServer]


@dataclass(frozen=True)
class ResolveSignal:
    code: Optional[str]


@dataclass(frozen=True)
class Send:
    data: Union[str, bytes]


@dataclass(frozen=True)
class SendSealed:
    payload: bytes


@dataclass(frozen=True)
class CreateOffer:
    pass


@dataclass(frozen=True)
class ApplyAnswer:
    desc: SessionDescription


@dataclass(frozen=True)
class ApplyOffer:
    desc: SessionDescription


@dataclass(frozen=True)
class AddCandidate:
    candidate: Dict[str, Any]


@dataclass(frozen=True)
class Defer:
    """Run ``action`` once the caller has finished configuring the transport."""
    action: Union[ApplyOffer, AddCandidate]


@dataclass(frozen=True)
class ReleaseDeferred:
    pass


@dataclass(frozen=True)
class ResolveDone:
    pass


@dataclass(frozen=True)
class Fail:
    reason: str


@dataclass(frozen=True)
class Close:
    code: int


Effect = Union[
    MakeTransport, ResolveSignal, Send, SendSealed, CreateOffer, ApplyAnswer,
    Defer, ReleaseDeferred, ResolveDone, Fail, Close,
]

# Effects that act on the peer connection.
TRANSPORT_EFFECTS = (MakeTransport, CreateOffer, ApplyAnswer, Defer, ReleaseDeferred)


@dataclass
class Session:
    role: Role
    secret: bytes
    slot: Optional[int] = None
    state: State = State.ANNOUNCING
    key: Optional[bytes] = None
    ready: bool = False
    ice_servers: List[IceServer] = field(default_factory=list)
    kx: Optional[KeyExchange] = None

    def __post_init__(self) -> None:
        if self.kx is None:
            self.kx = KeyExchange(self.secret)
        self.state = State.JOINING if self.role is Role.JOINER else State.ANNOUNCING

    @classmethod
    def creator(cls, secret: bytes, **kwargs) -> "Session":
        return cls(role=Role.CREATOR, secret=secret, **kwargs)

    @classmethod
    def joiner(cls, code: str, **kwargs) -> "Session":
        slot, secret = codec.decode(code)
        return cls(role=Role.JOINER, secret=secret, slot=slot, **kwargs)

    def seal(self, payload: bytes) -> bytes:
        if self.state not in KEYED_STATES:
            raise ProtocolError(f"no key in state {self.state.value}")
        return seal(self.key, payload)

    def handle(self, event: Event) -> List[Effect]:
        if self.state is State.ERROR:
            return []
        if isinstance(event, TransportReady):
            return self._on_ready()
        if isinstance(event, LocalCandidate):
            return self._on_local_candidate(event)
        if isinstance(event, Closed):
            return self._on_closed(event)

        handler = _HANDLERS[self.state]
        try:
            return handler(self, event.data)
        except (ProtocolError, BadKey, KeyExchangeError) as e:
            return self._fail(str(e))

    def _set_state(self, state: State) -> None:
        logger.debug("%s: %s -> %s", self.role.value, self.state.value, state.value)
        self.state = state

    def abort(self, reason: str) -> List[Effect]:
        """Fail the session because carrying out one of its effects failed."""
        if self.state is State.ERROR:
            return []
        return self._fail(reason)

    def _fail(self, reason: str) -> List[Effect]:
        logger.info("%s: handshake failed: %s", self.role.value, reason)
        effects: List[Effect] = [Fail(reason)]
        if self.state in KEYED_STATES:
            effects.append(Send(seal(self.key, BYE)))
        effects.append(Close(CloseCode.BAD_KEY))
        self._set_state(State.ERROR)
        return effects

    def _on_ready(self) -> List[Effect]:
        self.ready = True
        effects: List[Effect] = [ReleaseDeferred()]
        if self.state is State.AWAITING_TRANSPORT_READY:
            effects.append(CreateOffer())
            self._set_state(State.AWAITING_ANSWER)
        return effects

    def _on_local_candidate(self, event: LocalCandidate) -> List[Effect]:
        if self.state not in KEYED_STATES:
            return []
        return [SendSealed(json.dumps(event.candidate).encode("utf-8"))]

    def _on_closed(self, event: Closed) -> List[Effect]:
        if event.code in IGNORED_CLOSE_CODES:
            return []
        reason = CLOSE_REASONS.get(event.code)
        if reason is None:
            reason = f"signalling channel closed: {event.reason} ({event.code})"
        self._set_state(State.ERROR)
        return [Fail(reason)]

    # Pre-key messages.

    def _announcement(self, data: Union[str, bytes]) -> Announcement:
        try:
            return Announcement.model_validate_json(data)
        except ValidationError as e:
            raise ProtocolError("unexpected message") from e

    def _on_announcing(self, data: Union[str, bytes]) -> List[Effect]:
        msg = self._announcement(data)
        try:
            self.slot = int(msg.slot)
        except (TypeError, ValueError):
            raise ProtocolError("invalid slot") from None
        if self.slot < 0:
            raise ProtocolError("invalid slot")
        logger.info("assigned slot: %d", self.slot)
        self.ice_servers = msg.iceServers
        self._set_state(State.AWAITING_PAKE_MSG1)
        return [
            MakeTransport(self.ice_servers),
            ResolveSignal(codec.encode(self.slot, self.secret)),
        ]

    def _on_joining(self, data: Union[str, bytes]) -> List[Effect]:
        msg = self._announcement(data)
        self.ice_servers = msg.iceServers
        msg1 = self.kx.start()
        self._set_state(State.AWAITING_PAKE_MSG2)
        return [MakeTransport(self.ice_servers), ResolveSignal(None), Send(msg1)]

    def _on_pake_msg1(self, data: Union[str, bytes]) -> List[Effect]:
        if not isinstance(data, bytes):
            raise ProtocolError("unexpected message")
        self.key, msg2 = self.kx.exchange(data)
        effects: List[Effect] = [Send(msg2)]
        if self.ready:
            effects.append(CreateOffer())
            self._set_state(State.AWAITING_ANSWER)
        else:
            self._set_state(State.AWAITING_TRANSPORT_READY)
        return effects

    def _on_pake_msg2(self, data: Union[str, bytes]) -> List[Effect]:
        if not isinstance(data, bytes):
            raise ProtocolError("unexpected message")
        self.key = self.kx.finish(data)
        self._set_state(State.AWAITING_OFFER)
        return []

    def _on_unexpected(self, data: Union[str, bytes]) -> List[Effect]:
        raise ProtocolError("unexpected message")

    # Sealed messages.

    def _open(self, data: Union[str, bytes]) -> Dict[str, Any]:
        if not isinstance(data, bytes):
            raise ProtocolError("unexpected message")
        plaintext = unseal(self.key, data)
        if plaintext == BYE:
            raise _PeerBye()
        try:
            msg = json.loads(plaintext)
        except ValueError as e:
            raise ProtocolError("unexpected message") from e
        if not isinstance(msg, dict):
            raise ProtocolError("unexpected message")
        return msg

    def _description(self, data: Union[str, bytes], want: str) -> SessionDescription:
        msg = self._open(data)
        try:
            desc = SessionDescription.model_validate(msg)
        except ValidationError as e:
            raise ProtocolError("unexpected message") from e
        if desc.type != want:
            raise ProtocolError("unexpected message")
        return desc

    def _on_offer(self, data: Union[str, bytes]) -> List[Effect]:
        desc = self._description(data, "offer")
        logger.info("got offer")
        # Candidates can arrive right behind the offer, so there is no
        # intermediate state while the answer is being made.
        self._set_state(State.AWAITING_CANDIDATES)
        return [Defer(ApplyOffer(desc))]

    def _on_answer(self, data: Union[str, bytes]) -> List[Effect]:
        desc = self._description(data, "answer")
        logger.info("got answer")
        self._set_state(State.AWAITING_CANDIDATES)
        return [ApplyAnswer(desc), ResolveDone()]

    def _on_candidate(self, data: Union[str, bytes]) -> List[Effect]:
        msg = self._open(data)
        try:
            candidate = Candidate.model_validate(msg)
        except ValidationError as e:
            raise ProtocolError("unexpected message") from e
        logger.debug("got remote candidate %s", candidate.candidate)
        return [Defer(AddCandidate(candidate.model_dump()))]


class _PeerBye(ProtocolError):
    pass


def _sealed(handler):
    def wrapper(session: Session, data: Union[str, bytes]) -> List[Effect]:
        try:
            return handler(session, data)
        except _PeerBye:
            session._set_state(State.ERROR)
            return [Fail("peer hung up"), Close(CloseCode.PEER_HUNG_UP)]
    return wrapper


_HANDLERS = {
    State.ANNOUNCING: Session._on_announcing,
    State.JOINING: Session._on_joining,
    State.AWAITING_PAKE_MSG1: Session._on_pake_msg1,
    State.AWAITING_TRANSPORT_READY: Session._on_unexpected,
    State.AWAITING_PAKE_MSG2: Session._on_pake_msg2,
    State.AWAITING_OFFER: _sealed(Session._on_offer),
    State.AWAITING_ANSWER: _sealed(Session._on_answer),
    State.AWAITING_CANDIDATES: _sealed(Session._on_candidate),
    State.ERROR: Session._on_unexpected,
}
