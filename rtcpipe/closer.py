"""Report how the transport ended up connected when leaving the broker.

The close code is diagnostics for the broker only. Statistics are read
while the connection may already be changing, so the result is best effort.
"""

import logging
from typing import Any, Dict, Iterable, Optional

from .signaling import CloseCode
from .transport import PeerConnection

logger = logging.getLogger(__name__)

DIRECT_TYPES = frozenset({"host", "srflx", "prflx"})
CONNECTED_STATES = frozenset({"connected", "completed"})


def connection_type(stats: Iterable[Dict[str, Any]]) -> str:
    """Candidate type of the local end of the succeeded candidate pair, or ""."""
    stats = list(stats)
    local_id = None
    for s in stats:
        if s.get("type") == "candidate-pair" and s.get("state") == "succeeded":
            local_id = s.get("localCandidateId")
    if not local_id:
        return ""
    for s in stats:
        if s.get("id") == local_id:
            return s.get("candidateType") or ""
    return ""


def close_code(ice_state: str, conn_type: str = "") -> Optional[CloseCode]:
    if ice_state in CONNECTED_STATES:
        if conn_type in DIRECT_TYPES:
            return CloseCode.SUCCESS_DIRECT
        if conn_type == "relay":
            return CloseCode.SUCCESS_RELAY
        return CloseCode.SUCCESS
    if ice_state == "failed":
        return CloseCode.TRANSPORT_FAILED
    return None


async def classify(pc: PeerConnection) -> Optional[CloseCode]:
    state = pc.ice_connection_state
    conn_type = ""
    if state in CONNECTED_STATES:
        conn_type = connection_type(await pc.get_stats())
        logger.info("webrtc connected: %s", conn_type or "unknown")
    return close_code(state, conn_type)
