"""
Veil - Twisted ElGamal Encryption

Keys and encryption for confidential balances.

    commitment = x*G + r*H      (Pedersen commitment to the amount)
    handle     = r*P            (decrypt handle, P = s^-1 * H)

The owner of s recovers x*G = commitment - s*handle. Recovering x itself
needs a discrete log; decrypt_bounded() does a bounded search and is meant
for small values only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence, Tuple

from veil.constants import CURVE_ORDER, ELGAMAL_PUBKEY_SIZE
from veil.crypto.ciphertext import Ciphertext, GroupedCiphertext3Handles
from veil.crypto.ed25519 import (
    Ed25519Point,
    PedersenGenerators,
    random_scalar,
    scalar_invert,
    scalar_to_bytes,
    scalar_from_bytes,
)
from veil.errors import DecryptionFailed, InvalidPoint


@dataclass(frozen=True, slots=True)
class ElGamalPubkey:
    """
    ElGamal public key.

    SIZE: 32 bytes
    SERIALIZATION: compressed point
    """
    data: bytes

    def __post_init__(self):
        if len(self.data) != ELGAMAL_PUBKEY_SIZE:
            raise InvalidPoint(
                f"ElGamal pubkey must be {ELGAMAL_PUBKEY_SIZE} bytes, got {len(self.data)}"
            )

    def __bytes__(self) -> bytes:
        return self.data

    def __repr__(self) -> str:
        return f"ElGamalPubkey({self.data.hex()[:16]}...)"

    def hex(self) -> str:
        return self.data.hex()

    @classmethod
    def from_hex(cls, hex_string: str) -> ElGamalPubkey:
        return cls(bytes.fromhex(hex_string))


@dataclass(frozen=True, slots=True)
class ElGamalSecretKey:
    """Secret scalar s (never zero)."""
    scalar: int

    def __post_init__(self):
        if not 0 < self.scalar < CURVE_ORDER:
            raise ValueError("Secret scalar out of range")

    def __repr__(self) -> str:
        return "ElGamalSecretKey(<redacted>)"

    def to_bytes(self) -> bytes:
        return scalar_to_bytes(self.scalar)

    @classmethod
    def from_bytes(cls, data: bytes) -> ElGamalSecretKey:
        return cls(scalar_from_bytes(data))


@dataclass(frozen=True, slots=True)
class ElGamalKeypair:
    """Secret scalar plus its public point."""
    secret: ElGamalSecretKey
    public: ElGamalPubkey = field(init=False)

    def __post_init__(self):
        point = Ed25519Point.scalarmult(
            scalar_invert(self.secret.scalar), PedersenGenerators.get_H()
        )
        object.__setattr__(self, "public", ElGamalPubkey(point))

    @classmethod
    def from_scalar(cls, scalar: int) -> ElGamalKeypair:
        return cls(ElGamalSecretKey(scalar % CURVE_ORDER))

    @classmethod
    def generate(cls) -> ElGamalKeypair:
        return cls(ElGamalSecretKey(random_scalar()))

    def decrypt_to_point(self, ciphertext: Ciphertext) -> bytes:
        """Return x*G for a ciphertext encrypted to this key."""
        return Ed25519Point.sub(
            ciphertext.commitment,
            Ed25519Point.scalarmult(self.secret.scalar, ciphertext.handle),
        )


@dataclass(frozen=True, slots=True)
class PedersenOpening:
    """Blinding factor r of a commitment."""
    scalar: int

    @classmethod
    def generate(cls) -> PedersenOpening:
        return cls(random_scalar())

    @classmethod
    def zero(cls) -> PedersenOpening:
        return cls(0)

    def __add__(self, other: PedersenOpening) -> PedersenOpening:
        return PedersenOpening((self.scalar + other.scalar) % CURVE_ORDER)

    def __sub__(self, other: PedersenOpening) -> PedersenOpening:
        return PedersenOpening((self.scalar - other.scalar) % CURVE_ORDER)

    def __mul__(self, k: int) -> PedersenOpening:
        return PedersenOpening((self.scalar * k) % CURVE_ORDER)


def pedersen_commit(amount: int, opening: PedersenOpening) -> bytes:
    """x*G + r*H."""
    return Ed25519Point.add(
        Ed25519Point.scalarmult_base(amount),
        Ed25519Point.scalarmult(opening.scalar, PedersenGenerators.get_H()),
    )


def decrypt_handle(pubkey: ElGamalPubkey, opening: PedersenOpening) -> bytes:
    """r*P."""
    return Ed25519Point.scalarmult(opening.scalar, pubkey.data)


def encrypt_with(pubkey: ElGamalPubkey, amount: int, opening: PedersenOpening) -> Ciphertext:
    """Encrypt amount to pubkey with a caller-chosen opening."""
    return Ciphertext(pedersen_commit(amount, opening), decrypt_handle(pubkey, opening))


def encrypt(pubkey: ElGamalPubkey, amount: int) -> Tuple[Ciphertext, PedersenOpening]:
    opening = PedersenOpening.generate()
    return encrypt_with(pubkey, amount, opening), opening


def encrypt_grouped_with(
    pubkeys: Sequence[ElGamalPubkey],
    amount: int,
    opening: PedersenOpening
) -> GroupedCiphertext3Handles:
    """Encrypt amount once for three recipients sharing one commitment."""
    if len(pubkeys) != 3:
        raise ValueError("Grouped ciphertext needs exactly three pubkeys")
    return GroupedCiphertext3Handles(
        pedersen_commit(amount, opening),
        tuple(decrypt_handle(pk, opening) for pk in pubkeys),
    )


def decrypt_bounded(
    keypair: ElGamalKeypair,
    ciphertext: Ciphertext,
    max_value: int = 1 << 16
) -> int:
    """
    Recover a small plaintext by linear search over x*G.

    Raises DecryptionFailed if the value is not below max_value.
    """
    target = keypair.decrypt_to_point(ciphertext)
    G = PedersenGenerators.get_G()
    point = Ed25519Point.IDENTITY
    for x in range(max_value):
        if point == target:
            return x
        point = Ed25519Point.add(point, G)
    raise DecryptionFailed(f"Plaintext not below {max_value}")
