"""
Veil - Ed25519 Group Operations

Prime-order subgroup of Ed25519 through libsodium (PyNaCl bindings).

Points are 32-byte compressed encodings. Scalars are Python ints reduced
mod L. libsodium refuses to consume or produce the neutral element, so the
identity is handled here explicitly and never reaches the bindings.
"""

import hashlib
import logging
import secrets
import struct
from typing import Iterable, Optional, Tuple

import nacl.bindings
import nacl.exceptions

from veil.constants import (
    CURVE_ORDER,
    POINT_SIZE,
    SCALAR_SIZE,
    COFACTOR,
    IDENTITY_POINT,
    H_GENERATOR_SEED,
    DOMAIN_HASH_TO_POINT,
)
from veil.errors import InvalidPoint

logger = logging.getLogger(__name__)


# ============================================================================
# SCALARS
# ============================================================================

def scalar_to_bytes(s: int) -> bytes:
    """Encode a scalar as 32 bytes little-endian (reduced mod L)."""
    return (s % CURVE_ORDER).to_bytes(SCALAR_SIZE, "little")


def scalar_from_bytes(data: bytes) -> int:
    """Decode a canonical 32-byte scalar."""
    if len(data) != SCALAR_SIZE:
        raise InvalidPoint(f"Scalar must be {SCALAR_SIZE} bytes, got {len(data)}")
    s = int.from_bytes(data, "little")
    if s >= CURVE_ORDER:
        raise InvalidPoint("Scalar is not canonical")
    return s


def scalar_reduce_wide(data: bytes) -> int:
    """Reduce a 64-byte value to a scalar."""
    if len(data) != 64:
        data = hashlib.sha512(data).digest()
    return int.from_bytes(nacl.bindings.crypto_core_ed25519_scalar_reduce(data), "little")


def random_scalar() -> int:
    """Uniform non-zero scalar."""
    return secrets.randbelow(CURVE_ORDER - 1) + 1


def scalar_invert(s: int) -> int:
    s %= CURVE_ORDER
    if s == 0:
        raise ValueError("Zero has no inverse")
    return pow(s, CURVE_ORDER - 2, CURVE_ORDER)


# ============================================================================
# POINTS
# ============================================================================

class Ed25519Point:
    """
    Ed25519 point operations using libsodium.

    Provides safe wrappers around nacl.bindings for:
    - Point validation
    - Point addition/subtraction
    - Scalar multiplication (variable base and fixed base)
    - Hash to point
    """

    POINT_SIZE = POINT_SIZE
    IDENTITY = IDENTITY_POINT

    @staticmethod
    def is_identity(point: bytes) -> bool:
        return point == IDENTITY_POINT

    @staticmethod
    def is_valid_point(point: bytes) -> bool:
        """Check that bytes encode the identity or a prime-order subgroup point."""
        if len(point) != POINT_SIZE:
            return False
        if point == IDENTITY_POINT:
            return True
        return bool(nacl.bindings.crypto_core_ed25519_is_valid_point(point))

    @staticmethod
    def validate(point: bytes) -> bytes:
        """Return point unchanged or raise InvalidPoint."""
        if not Ed25519Point.is_valid_point(point):
            raise InvalidPoint(f"Not a valid group element: {point.hex()[:16]}...")
        return point

    @staticmethod
    def add(p: bytes, q: bytes) -> bytes:
        """P + Q."""
        if p == IDENTITY_POINT:
            return q
        if q == IDENTITY_POINT:
            return p
        try:
            return nacl.bindings.crypto_core_ed25519_add(p, q)
        except (nacl.exceptions.RuntimeError, nacl.exceptions.TypeError) as e:
            raise InvalidPoint(f"Point addition failed: {e}") from e

    @staticmethod
    def sub(p: bytes, q: bytes) -> bytes:
        """P - Q."""
        if q == IDENTITY_POINT:
            return p
        try:
            return nacl.bindings.crypto_core_ed25519_sub(p, q)
        except (nacl.exceptions.RuntimeError, nacl.exceptions.TypeError) as e:
            raise InvalidPoint(f"Point subtraction failed: {e}") from e

    @staticmethod
    def scalarmult(scalar: int, point: bytes) -> bytes:
        """s * P."""
        scalar %= CURVE_ORDER
        if scalar == 0 or point == IDENTITY_POINT:
            return IDENTITY_POINT
        try:
            return nacl.bindings.crypto_scalarmult_ed25519_noclamp(
                scalar_to_bytes(scalar), point
            )
        except (nacl.exceptions.RuntimeError, nacl.exceptions.TypeError) as e:
            raise InvalidPoint(f"Scalar multiplication failed: {e}") from e

    @staticmethod
    def scalarmult_base(scalar: int) -> bytes:
        """s * G."""
        scalar %= CURVE_ORDER
        if scalar == 0:
            return IDENTITY_POINT
        return nacl.bindings.crypto_scalarmult_ed25519_base_noclamp(scalar_to_bytes(scalar))

    @staticmethod
    def multiscalar(pairs: Iterable[Tuple[int, bytes]]) -> bytes:
        """Sum of s_i * P_i."""
        acc = IDENTITY_POINT
        for scalar, point in pairs:
            acc = Ed25519Point.add(acc, Ed25519Point.scalarmult(scalar, point))
        return acc

    @staticmethod
    def hash_to_point(data: bytes) -> bytes:
        """
        Hash data to a prime-order subgroup point.

        Uses try-and-increment with domain separation, then clears the
        cofactor.
        """
        for counter in range(256):
            hash_input = DOMAIN_HASH_TO_POINT + data + struct.pack("<B", counter)
            candidate = bytearray(hashlib.sha256(hash_input).digest())
            extra = hashlib.sha256(hash_input + b"\xff").digest()[0]
            candidate[31] = (candidate[31] & 0x7F) | ((extra & 1) << 7)
            candidate = bytes(candidate)

            if candidate != IDENTITY_POINT and Ed25519Point.is_valid_point(candidate):
                result = Ed25519Point.scalarmult(COFACTOR, candidate)
                if result != IDENTITY_POINT:
                    return result

        raise InvalidPoint("Hash to point failed after 256 attempts")


# ============================================================================
# PEDERSEN GENERATORS
# ============================================================================

class PedersenGenerators:
    """
    Pedersen commitment generators G and H.

    G is the standard Ed25519 base point.
    H is derived via hash-to-point with a nothing-up-my-sleeve seed, so
    nobody knows log_G(H).
    """

    _G: Optional[bytes] = None
    _H: Optional[bytes] = None

    @classmethod
    def get_G(cls) -> bytes:
        if cls._G is None:
            cls._G = Ed25519Point.scalarmult_base(1)
        return cls._G

    @classmethod
    def get_H(cls) -> bytes:
        if cls._H is None:
            cls._H = Ed25519Point.hash_to_point(H_GENERATOR_SEED)
        return cls._H
