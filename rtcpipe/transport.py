"""Contract for the WebRTC stack.

Everything the handshake and the pump need from a peer connection and its
data channel. ``rtc.py`` implements it on top of aiortc; the tests use
in-memory fakes.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .models import IceServer, SessionDescription


class DataChannel(ABC):

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued for sending but not yet handed to the network."""
        raise NotImplementedError

    @property
    @abstractmethod
    def buffered_amount_low_threshold(self) -> int:
        raise NotImplementedError

    @buffered_amount_low_threshold.setter
    @abstractmethod
    def buffered_amount_low_threshold(self, value: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def send(self, data: bytes) -> int:
        """Queue one message. Returns the number of bytes accepted."""
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def on_open(self, cb: Callable[[], None]) -> None:
        raise NotImplementedError

    @abstractmethod
    def on_message(self, cb: Callable[[bytes], None]) -> None:
        raise NotImplementedError

    @abstractmethod
    def on_close(self, cb: Callable[[], None]) -> None:
        raise NotImplementedError

    @abstractmethod
    def on_buffered_amount_low(self, cb: Callable[[], None]) -> None:
        """Called when buffered_amount drops to or below the threshold."""
        raise NotImplementedError


class PeerConnection(ABC):

    @abstractmethod
    def create_data_channel(self, label: str) -> DataChannel:
        """Create the pre-negotiated data channel (stream id 0)."""
        raise NotImplementedError

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        raise NotImplementedError

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        raise NotImplementedError

    @abstractmethod
    async def set_local_description(self, desc: SessionDescription) -> None:
        raise NotImplementedError

    @abstractmethod
    async def set_remote_description(self, desc: SessionDescription) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def local_description(self) -> Optional[SessionDescription]:
        raise NotImplementedError

    @abstractmethod
    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def ice_connection_state(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def on_ice_connection_state_change(self, cb: Callable[[str], None]) -> None:
        raise NotImplementedError

    @abstractmethod
    def on_candidate(self, cb: Callable[[Dict[str, Any]], None]) -> None:
        """Called with each trickled local candidate, if the stack trickles."""
        raise NotImplementedError

    @abstractmethod
    async def get_stats(self) -> List[Dict[str, Any]]:
        """Connectivity statistics as dicts keyed with W3C stats field names."""
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


class TransportProvider(ABC):

    @abstractmethod
    def new_peer_connection(self, ice_servers: List[IceServer]) -> PeerConnection:
        raise NotImplementedError
