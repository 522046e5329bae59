"""
Veil - Ciphertext Algebra

Homomorphic arithmetic over two-component ElGamal ciphertexts.

Wire format: commitment(32) || handle(32). All operations are component-wise
group operations, pure, and never mutate their inputs:

    add(Enc(a), Enc(b))              == Enc(a + b)
    scalar_multiply(Enc(a), k)       == Enc(k * a)
    combine_lo_hi(Enc(lo), Enc(hi), k) == Enc(lo + 2^k * hi)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple, Union

from veil.constants import (
    CIPHERTEXT_SIZE,
    GROUPED_CIPHERTEXT_3_HANDLES_SIZE,
    POINT_SIZE,
    IDENTITY_POINT,
)
from veil.crypto.ed25519 import Ed25519Point
from veil.errors import InvalidCiphertextLength

CiphertextLike = Union[bytes, bytearray, "Ciphertext"]


# ============================================================================
# WIRE FORMAT
# ============================================================================

def parse(data: bytes) -> Tuple[bytes, bytes]:
    """Split 64 ciphertext bytes into (commitment, handle)."""
    if len(data) != CIPHERTEXT_SIZE:
        raise InvalidCiphertextLength(CIPHERTEXT_SIZE, len(data))
    data = bytes(data)
    return data[:POINT_SIZE], data[POINT_SIZE:]


def combine(commitment: bytes, handle: bytes) -> bytes:
    """Join (commitment, handle) into 64 ciphertext bytes."""
    if len(commitment) != POINT_SIZE or len(handle) != POINT_SIZE:
        raise InvalidCiphertextLength(CIPHERTEXT_SIZE, len(commitment) + len(handle))
    return bytes(commitment) + bytes(handle)


def _components(ct: CiphertextLike) -> Tuple[bytes, bytes]:
    if isinstance(ct, Ciphertext):
        return ct.commitment, ct.handle
    return parse(ct)


# ============================================================================
# ARITHMETIC
# ============================================================================

def add(left: CiphertextLike, right: CiphertextLike) -> bytes:
    lc, lh = _components(left)
    rc, rh = _components(right)
    return combine(Ed25519Point.add(lc, rc), Ed25519Point.add(lh, rh))


def subtract(left: CiphertextLike, right: CiphertextLike) -> bytes:
    lc, lh = _components(left)
    rc, rh = _components(right)
    return combine(Ed25519Point.sub(lc, rc), Ed25519Point.sub(lh, rh))


def scalar_multiply(ct: CiphertextLike, scalar: int) -> bytes:
    c, h = _components(ct)
    return combine(Ed25519Point.scalarmult(scalar, c), Ed25519Point.scalarmult(scalar, h))


def add_amount(ct: CiphertextLike, amount: int) -> bytes:
    """Add a public amount; only the commitment changes."""
    c, h = _components(ct)
    return combine(Ed25519Point.add(c, Ed25519Point.scalarmult_base(amount)), h)


def subtract_amount(ct: CiphertextLike, amount: int) -> bytes:
    c, h = _components(ct)
    return combine(Ed25519Point.sub(c, Ed25519Point.scalarmult_base(amount)), h)


def combine_lo_hi(lo: CiphertextLike, hi: CiphertextLike, shift_bits: int) -> bytes:
    """lo + 2^shift_bits * hi."""
    if shift_bits < 0:
        raise ValueError("shift_bits must be non-negative")
    return add(lo, scalar_multiply(hi, 1 << shift_bits))


# ============================================================================
# TYPES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Ciphertext:
    """
    ElGamal ciphertext.

    SIZE: 64 bytes
    SERIALIZATION: commitment || handle
    """
    commitment: bytes
    handle: bytes

    def __post_init__(self):
        if len(self.commitment) != POINT_SIZE or len(self.handle) != POINT_SIZE:
            raise InvalidCiphertextLength(
                CIPHERTEXT_SIZE, len(self.commitment) + len(self.handle)
            )

    def __bytes__(self) -> bytes:
        return self.commitment + self.handle

    def __repr__(self) -> str:
        return f"Ciphertext({self.commitment.hex()[:8]}..|{self.handle.hex()[:8]}..)"

    def __add__(self, other: Ciphertext) -> Ciphertext:
        return Ciphertext.from_bytes(add(self, other))

    def __sub__(self, other: Ciphertext) -> Ciphertext:
        return Ciphertext.from_bytes(subtract(self, other))

    def __mul__(self, scalar: int) -> Ciphertext:
        return Ciphertext.from_bytes(scalar_multiply(self, scalar))

    def to_bytes(self) -> bytes:
        return bytes(self)

    def serialize(self) -> bytes:
        return bytes(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> Ciphertext:
        return cls(*parse(data))

    @classmethod
    def deserialize(cls, data: bytes, offset: int = 0) -> tuple[Ciphertext, int]:
        """Deserialize from bytes, return (Ciphertext, bytes_consumed)."""
        return cls.from_bytes(data[offset:offset + CIPHERTEXT_SIZE]), CIPHERTEXT_SIZE

    @classmethod
    def zero(cls) -> Ciphertext:
        """Encryption of zero with zero opening."""
        return cls(IDENTITY_POINT, IDENTITY_POINT)

    def is_zero(self) -> bool:
        return self.commitment == IDENTITY_POINT and self.handle == IDENTITY_POINT

    def add_amount(self, amount: int) -> Ciphertext:
        return Ciphertext.from_bytes(add_amount(self, amount))

    def subtract_amount(self, amount: int) -> Ciphertext:
        return Ciphertext.from_bytes(subtract_amount(self, amount))


@dataclass(frozen=True, slots=True)
class GroupedCiphertext3Handles:
    """
    One commitment decryptable by three keys.

    SIZE: 128 bytes
    SERIALIZATION: commitment || handle_0 || handle_1 || handle_2
    """
    commitment: bytes
    handles: Tuple[bytes, bytes, bytes]

    def __post_init__(self):
        sizes = [len(self.commitment)] + [len(h) for h in self.handles]
        if len(self.handles) != 3 or any(s != POINT_SIZE for s in sizes):
            raise InvalidCiphertextLength(GROUPED_CIPHERTEXT_3_HANDLES_SIZE, sum(sizes))

    def __bytes__(self) -> bytes:
        return self.commitment + b"".join(self.handles)

    def to_bytes(self) -> bytes:
        return bytes(self)

    @classmethod
    def from_bytes(cls, data: bytes) -> GroupedCiphertext3Handles:
        if len(data) != GROUPED_CIPHERTEXT_3_HANDLES_SIZE:
            raise InvalidCiphertextLength(GROUPED_CIPHERTEXT_3_HANDLES_SIZE, len(data))
        data = bytes(data)
        return cls(
            data[:32],
            (data[32:64], data[64:96], data[96:128]),
        )

    def ciphertext(self, index: int) -> Ciphertext:
        """Per-recipient ciphertext: commitment || handle(index)."""
        return Ciphertext(self.commitment, self.handles[index])
