"""Key exchange and sealing of signalling messages.

The password-authenticated key exchange is SPAKE2. The joining side plays
``A`` and speaks first; the creating side plays ``B`` and replies. Matching
passwords give both sides the same key; a mismatch gives unrelated keys,
which only shows up when the first sealed message fails to open.
"""

import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from spake2 import SPAKE2_A, SPAKE2_B

from .errors import BadKey, KeyExchangeError

NONCE_SIZE = 12
FINGERPRINT_SIZE = 16


def _hkdf(secret: bytes, info: bytes, length: int = 32) -> bytes:
    return HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info).derive(secret)


class KeyExchange:
    """One side of a SPAKE2 exchange over a shared password."""

    def __init__(self, password: bytes) -> None:
        self.password = password
        self._pake = None

    def start(self) -> bytes:
        """Joiner: produce the first PAKE message."""
        self._pake = SPAKE2_A(self.password)
        return self._pake.start()

    def exchange(self, msg: bytes) -> Tuple[bytes, bytes]:
        """Creator: consume the first message, return ``(key, reply)``."""
        pake = SPAKE2_B(self.password)
        reply = pake.start()
        try:
            shared = pake.finish(msg)
        except Exception as e:
            raise KeyExchangeError(f"could not generate key: {e}") from e
        return _hkdf(shared, b"rtcpipe seal"), reply

    def finish(self, msg: bytes) -> bytes:
        """Joiner: consume the reply and return the key."""
        if self._pake is None:
            raise KeyExchangeError("finish called before start")
        try:
            shared = self._pake.finish(msg)
        except Exception as e:
            raise KeyExchangeError(f"could not generate key: {e}") from e
        return _hkdf(shared, b"rtcpipe seal")


def seal(key: bytes, plaintext: bytes) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + ChaCha20Poly1305(key).encrypt(nonce, plaintext, None)


def unseal(key: bytes, data: bytes) -> bytes:
    if len(data) <= NONCE_SIZE:
        raise BadKey("sealed message too short")
    try:
        return ChaCha20Poly1305(key).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise BadKey("bad key") from e


def fingerprint(key: bytes) -> bytes:
    """Short value both sides can compare out of band."""
    return _hkdf(key, b"rtcpipe fingerprint", FINGERPRINT_SIZE)
