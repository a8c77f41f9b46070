"""Signalling wire models."""

from typing import List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SessionDescription(BaseModel):
    """An SDP offer or answer, serialised as ``{type, sdp}``."""

    type: str
    sdp: str


class IceServer(BaseModel):
    """A STUN/TURN server.

    The broker capitalises field names (``URLs``, ``Username``,
    ``Credential``); both spellings are accepted and the model always
    dumps the lowercase form.
    """

    model_config = ConfigDict(populate_by_name=True)

    urls: List[str] = Field(validation_alias=AliasChoices("urls", "URLs"))
    username: str = Field("", validation_alias=AliasChoices("username", "Username"))
    credential: str = Field("", validation_alias=AliasChoices("credential", "Credential"))


class Announcement(BaseModel):
    """First message from the broker: the slot (creator only) and ICE servers."""

    slot: Optional[Union[int, str]] = None
    iceServers: List[IceServer] = []


class Candidate(BaseModel):
    """A trickled ICE candidate, as produced by ``RTCIceCandidate.toJSON()``."""

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


def parse_ice_servers(value: str) -> List[IceServer]:
    """Parse a comma separated list of STUN/TURN URLs."""
    return [IceServer(urls=[url.strip()]) for url in value.split(",") if url.strip()]
