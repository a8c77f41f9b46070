"""Persistent, versioned signalling channel to the broker (websocket)."""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Optional, Union
from urllib.parse import urlsplit

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .config import PROTOCOL_VERSION
from .errors import BrokerError

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]


class CloseCode(IntEnum):
    NO_SUCH_SLOT = 4000
    SLOT_TIMED_OUT = 4001
    NO_MORE_SLOTS = 4002
    WRONG_PROTOCOL = 4003
    PEER_HUNG_UP = 4004
    BAD_KEY = 4005
    SUCCESS = 4006
    SUCCESS_DIRECT = 4007
    SUCCESS_RELAY = 4008
    TRANSPORT_FAILED = 4009


class ChannelClosed(Exception):
    """The broker connection is gone; carries its close code."""

    def __init__(self, code: int, reason: str = "") -> None:
        super().__init__(f"signalling channel closed: {reason} ({code})")
        self.code = code
        self.reason = reason


class SignalingChannel(ABC):
    """An ordered, duplex message stream to the peer via the broker."""

    @abstractmethod
    async def send(self, data: Frame) -> None:
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> Frame:
        """Next message. Raises ChannelClosed once the connection is gone."""
        raise NotImplementedError

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        raise NotImplementedError


def wsserver(url: str, slot: Optional[int] = None) -> str:
    """Turn an http(s) broker URL into the ws(s) URL for a slot."""
    u = urlsplit(url)
    scheme = "ws" if u.scheme in ("http", "ws") else "wss"
    path = u.path or "/"
    if not path.startswith("/"):
        path = "/" + path
    if not path.endswith("/"):
        path += "/"
    if slot is not None:
        path = f"{path}{slot}"
    return f"{scheme}://{u.netloc}{path}"


class WebSocketChannel(SignalingChannel):
    def __init__(self, ws: ClientConnection) -> None:
        self.ws = ws

    @classmethod
    async def connect(cls, server: str, slot: Optional[int] = None) -> "WebSocketChannel":
        url = wsserver(server, slot)
        logger.debug("connecting to %s", url)
        try:
            ws = await connect(url, subprotocols=[PROTOCOL_VERSION])
        except (OSError, InvalidHandshake, InvalidURI) as e:
            raise BrokerError(f"could not connect to signalling server: {e}") from e
        logger.info("signalling session established")
        return cls(ws)

    async def send(self, data: Frame) -> None:
        try:
            await self.ws.send(data)
        except ConnectionClosed as e:
            raise _closed(e) from e

    async def recv(self) -> Frame:
        try:
            return await self.ws.recv()
        except ConnectionClosed as e:
            raise _closed(e) from e

    async def close(self, code: int = 1000) -> None:
        await self.ws.close(code=code)


def _closed(e: ConnectionClosed) -> ChannelClosed:
    if e.rcvd is not None:
        return ChannelClosed(e.rcvd.code, e.rcvd.reason)
    return ChannelClosed(1006, "connection lost")
