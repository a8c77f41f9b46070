"""Wormhole codes: a slot number and a short password in one string.

A code looks like ``7-aeba``: the decimal slot, a dash, and the password
bytes in lowercase base32 with the padding stripped.
"""

import base64
import binascii
from typing import Tuple

from .errors import MalformedCode

# Bytes of password carried by a freshly minted code.
PASS_LEN = 2

_ALPHABET = frozenset("abcdefghijklmnopqrstuvwxyz234567")


def encode(slot: int, secret: bytes) -> str:
    if slot < 0:
        raise ValueError(f"invalid slot: {slot}")
    if not secret:
        raise ValueError("empty password")
    word = base64.b32encode(secret).decode("ascii").rstrip("=").lower()
    return f"{slot}-{word}"


def decode(code: str) -> Tuple[int, bytes]:
    slot_part, sep, word = code.strip().lower().partition("-")
    if not sep or not (slot_part.isascii() and slot_part.isdigit()):
        raise MalformedCode(f"bad code: {code!r}")
    if not word or not set(word) <= _ALPHABET:
        raise MalformedCode(f"bad code: {code!r}")

    padded = word.upper() + "=" * (-len(word) % 8)
    try:
        secret = base64.b32decode(padded)
    except binascii.Error as e:
        raise MalformedCode(f"bad code: {code!r}") from e
    if not secret:
        raise MalformedCode(f"bad code: {code!r}")
    return int(slot_part), secret
