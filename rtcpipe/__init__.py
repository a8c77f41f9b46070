"""
rtcpipe: a byte pipe between two peers over a WebRTC data channel.

- dial: one-shot signalling through a minimal broker (bulk pipe)
- Wormhole: PAKE-authenticated rendezvous with a short code
- Pipe: backpressured copy between local streams and the channel
"""

from .codec import decode, encode
from .dial import Conn, dial
from .pump import Pipe
from .wormhole import Wormhole

__all__ = [
    "Conn",
    "Pipe",
    "Wormhole",
    "decode",
    "dial",
    "encode",
]

__version__ = "0.1.0"
