"""aiortc implementation of the transport contract."""

from __future__ import annotations
import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from .errors import WriteError
from .models import IceServer, SessionDescription
from .transport import DataChannel, PeerConnection, TransportProvider

logger = logging.getLogger(__name__)


class AiortcDataChannel(DataChannel):
    def __init__(self, channel: RTCDataChannel) -> None:
        self._dc = channel

    @property
    def buffered_amount(self) -> int:
        return self._dc.bufferedAmount

    @property
    def buffered_amount_low_threshold(self) -> int:
        return self._dc.bufferedAmountLowThreshold

    @buffered_amount_low_threshold.setter
    def buffered_amount_low_threshold(self, value: int) -> None:
        self._dc.bufferedAmountLowThreshold = value

    def send(self, data: bytes) -> int:
        try:
            self._dc.send(data)
        except InvalidStateError as e:
            raise WriteError(str(e)) from e
        return len(data)

    def close(self) -> None:
        self._dc.close()

    def on_open(self, cb: Callable[[], None]) -> None:
        self._dc.on("open", cb)

    def on_message(self, cb: Callable[[bytes], None]) -> None:
        def _message(data):
            if isinstance(data, str):
                data = data.encode("utf-8")
            cb(data)
        self._dc.on("message", _message)

    def on_close(self, cb: Callable[[], None]) -> None:
        self._dc.on("close", cb)

    def on_buffered_amount_low(self, cb: Callable[[], None]) -> None:
        self._dc.on("bufferedamountlow", cb)


class AiortcPeerConnection(PeerConnection):
    def __init__(self, ice_servers: List[IceServer]) -> None:
        config = RTCConfiguration(iceServers=[
            RTCIceServer(
                urls=s.urls,
                username=s.username or None,
                credential=s.credential or None,
            )
            for s in ice_servers
        ])
        self._pc = RTCPeerConnection(configuration=config)

    def create_data_channel(self, label: str) -> DataChannel:
        return AiortcDataChannel(self._pc.createDataChannel(label, negotiated=True, id=0))

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, desc: SessionDescription) -> None:
        # aiortc gathers every candidate here and embeds them in the SDP.
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=desc.sdp, type=desc.type))

    async def set_remote_description(self, desc: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=desc.sdp, type=desc.type))

    @property
    def local_description(self) -> Optional[SessionDescription]:
        desc = self._pc.localDescription
        if desc is None:
            return None
        return SessionDescription(type=desc.type, sdp=desc.sdp)

    async def add_candidate(self, candidate: Dict[str, Any]) -> None:
        line = candidate.get("candidate", "")
        if not line:
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self._pc.addIceCandidate(ice)

    @property
    def ice_connection_state(self) -> str:
        return self._pc.iceConnectionState

    def on_ice_connection_state_change(self, cb: Callable[[str], None]) -> None:
        self._pc.on("iceconnectionstatechange", lambda: cb(self._pc.iceConnectionState))

    def on_candidate(self, cb: Callable[[Dict[str, Any]], None]) -> None:
        # aiortc does not trickle; candidates travel inside the descriptions.
        pass

    async def get_stats(self) -> List[Dict[str, Any]]:
        report = await self._pc.getStats()
        return [dataclasses.asdict(s) for s in report.values()]

    async def close(self) -> None:
        await self._pc.close()


class AiortcProvider(TransportProvider):
    def new_peer_connection(self, ice_servers: List[IceServer]) -> PeerConnection:
        logger.debug("new peer connection, ice servers %s", [s.urls for s in ice_servers])
        return AiortcPeerConnection(ice_servers)
