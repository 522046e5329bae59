"""
Veil - Fiat-Shamir Transcript

Domain-separated SHA-512 transcript. Every appended item is labelled and
length-prefixed; each challenge is folded back into the transcript so that
successive challenges are independent.
"""

import hashlib
import struct

from veil.constants import DOMAIN_TRANSCRIPT
from veil.crypto.ed25519 import scalar_reduce_wide, scalar_to_bytes


class Transcript:
    """Append-only proof transcript."""

    def __init__(self, label: bytes):
        self._state = bytearray()
        self.append_message(b"dom-sep", DOMAIN_TRANSCRIPT + label)

    def append_message(self, label: bytes, message: bytes) -> None:
        self._state += struct.pack("<I", len(label)) + label
        self._state += struct.pack("<I", len(message)) + message

    def append_point(self, label: bytes, point: bytes) -> None:
        self.append_message(label, point)

    def append_u64(self, label: bytes, value: int) -> None:
        self.append_message(label, struct.pack("<Q", value))

    def challenge_scalar(self, label: bytes) -> int:
        digest = hashlib.sha512(bytes(self._state) + label).digest()
        c = scalar_reduce_wide(digest)
        self.append_message(label, scalar_to_bytes(c))
        return c
