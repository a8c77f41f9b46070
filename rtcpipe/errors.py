"""Exception types raised across the client."""


class RtcpipeError(Exception):
    pass


class MalformedCode(RtcpipeError, ValueError):
    """The wormhole code could not be decoded."""


class BrokerError(RtcpipeError):
    """The signalling server was unreachable or refused a request."""


class ProtocolError(RtcpipeError):
    """The peer or the broker sent something we did not expect."""


class BadKey(RtcpipeError):
    """A sealed message failed to open under the session key."""


class KeyExchangeError(RtcpipeError):
    pass


class DialError(RtcpipeError):
    """The transport failed before the data channel opened."""


class WriteError(RtcpipeError):
    pass


class ShortWrite(WriteError):
    pass
