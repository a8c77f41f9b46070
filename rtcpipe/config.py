# Defaults shared by the CLI and the broker. CLI options and the RTCPIPE_*
# environment variables override them.

DEFAULT_ICE = "stun:stun.l.google.com:19302"
DEFAULT_MINSIG = "https://minimumsignal.0f.io/"
DEFAULT_SIGNAL_SERVER = "https://webwormhole.io/"

# Signalling protocol version, sent as the websocket subprotocol.
PROTOCOL_VERSION = "4"

# Thresholds of 1 MiB and above have been seen to stall SCTP stacks.
LOW_WATER_MARK = 512 << 10
CHUNK_SIZE = 32 << 10
FLUSH_POLL_INTERVAL = 1.0

# Broker
SLOT_TIMEOUT = 30 * 60
MAX_SLOTS = 1024
