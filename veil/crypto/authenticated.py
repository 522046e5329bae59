"""
Veil - Decryptable Balance Encryption

AES-128-GCM over a u64 little-endian amount. Lets the account owner read
their available balance without a discrete-log search.

FORMAT (36 bytes): nonce(12) || ciphertext(8) || tag(16)
"""

from __future__ import annotations

import hmac
import secrets
import struct
from dataclasses import dataclass

from Crypto.Cipher import AES

from veil.constants import (
    AE_KEY_SIZE,
    AE_NONCE_SIZE,
    AE_TAG_SIZE,
    AE_PLAINTEXT_SIZE,
    AE_CIPHERTEXT_SIZE,
)
from veil.errors import DecryptionFailed, InvalidParameterError


@dataclass(frozen=True, slots=True)
class AeKey:
    """
    Symmetric key for the decryptable available balance.

    SIZE: 16 bytes
    """
    data: bytes

    def __post_init__(self):
        if len(self.data) != AE_KEY_SIZE:
            raise ValueError(f"AeKey must be {AE_KEY_SIZE} bytes, got {len(self.data)}")

    def __repr__(self) -> str:
        return "AeKey(<redacted>)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, AeKey):
            return hmac.compare_digest(self.data, other.data)
        return False

    def __hash__(self) -> int:
        return hash(self.data)

    @classmethod
    def generate(cls) -> AeKey:
        return cls(secrets.token_bytes(AE_KEY_SIZE))

    def encrypt(self, amount: int) -> bytes:
        """Encrypt a u64 amount, return 36 bytes."""
        if not 0 <= amount < 2**64:
            raise InvalidParameterError("amount", "must fit in u64")
        nonce = secrets.token_bytes(AE_NONCE_SIZE)
        cipher = AES.new(self.data, AES.MODE_GCM, nonce=nonce, mac_len=AE_TAG_SIZE)
        ct, tag = cipher.encrypt_and_digest(struct.pack("<Q", amount))
        return nonce + ct + tag

    def decrypt(self, data: bytes) -> int:
        """Decrypt 36 bytes back to the amount."""
        if len(data) != AE_CIPHERTEXT_SIZE:
            raise DecryptionFailed(
                f"Decryptable balance must be {AE_CIPHERTEXT_SIZE} bytes, got {len(data)}"
            )
        nonce = data[:AE_NONCE_SIZE]
        ct = data[AE_NONCE_SIZE:AE_NONCE_SIZE + AE_PLAINTEXT_SIZE]
        tag = data[AE_NONCE_SIZE + AE_PLAINTEXT_SIZE:]
        cipher = AES.new(self.data, AES.MODE_GCM, nonce=nonce, mac_len=AE_TAG_SIZE)
        try:
            plaintext = cipher.decrypt_and_verify(ct, tag)
        except ValueError as e:
            raise DecryptionFailed("Decryptable balance authentication failed") from e
        return struct.unpack("<Q", plaintext)[0]
