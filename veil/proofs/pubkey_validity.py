"""
Veil - Public Key Validity Proof

Proves knowledge of the secret scalar s behind an ElGamal pubkey P,
i.e. s*P == H. Schnorr proof made non-interactive with the transcript.

    Y = y*P
    c = Challenge(P, Y)
    z = c*s + y

Verification: z*P == c*H + Y
"""

from __future__ import annotations

from dataclasses import dataclass

from veil.constants import (
    CURVE_ORDER,
    PUBKEY_VALIDITY_CONTEXT_SIZE,
    PROOF_IX_PUBKEY_VALIDITY,
)
from veil.crypto.ed25519 import (
    Ed25519Point,
    PedersenGenerators,
    random_scalar,
    scalar_to_bytes,
    scalar_from_bytes,
)
from veil.crypto.elgamal import ElGamalKeypair, ElGamalPubkey
from veil.crypto.transcript import Transcript
from veil.errors import InvalidProofContext, ProofVerificationFailed

PROOF_SIZE = 64


@dataclass(frozen=True, slots=True)
class PubkeyValidityContext:
    """Public statement: the pubkey."""
    pubkey: ElGamalPubkey

    def to_bytes(self) -> bytes:
        return bytes(self.pubkey)

    @classmethod
    def from_bytes(cls, data: bytes) -> PubkeyValidityContext:
        if len(data) != PUBKEY_VALIDITY_CONTEXT_SIZE:
            raise InvalidProofContext(
                f"Pubkey validity context must be {PUBKEY_VALIDITY_CONTEXT_SIZE} bytes"
            )
        return cls(ElGamalPubkey(data))


def _transcript(context: PubkeyValidityContext) -> Transcript:
    t = Transcript(b"pubkey-validity")
    t.append_point(b"pubkey", bytes(context.pubkey))
    return t


@dataclass(frozen=True, slots=True)
class PubkeyValidityProof:
    Y: bytes
    z: int

    @classmethod
    def prove(cls, keypair: ElGamalKeypair) -> PubkeyValidityProof:
        context = PubkeyValidityContext(keypair.public)
        t = _transcript(context)

        y = random_scalar()
        Y = Ed25519Point.scalarmult(y, bytes(keypair.public))
        t.append_point(b"Y", Y)
        c = t.challenge_scalar(b"c")

        return cls(Y, (c * keypair.secret.scalar + y) % CURVE_ORDER)

    def verify(self, context: PubkeyValidityContext) -> None:
        """Raise ProofVerificationFailed unless the proof holds."""
        P = Ed25519Point.validate(bytes(context.pubkey))
        if Ed25519Point.is_identity(P):
            raise ProofVerificationFailed("pubkey validity", "identity pubkey")

        t = _transcript(context)
        t.append_point(b"Y", self.Y)
        c = t.challenge_scalar(b"c")

        lhs = Ed25519Point.scalarmult(self.z, P)
        rhs = Ed25519Point.add(
            Ed25519Point.scalarmult(c, PedersenGenerators.get_H()), self.Y
        )
        if lhs != rhs:
            raise ProofVerificationFailed("pubkey validity")

    def to_bytes(self) -> bytes:
        return self.Y + scalar_to_bytes(self.z)

    @classmethod
    def from_bytes(cls, data: bytes) -> PubkeyValidityProof:
        if len(data) != PROOF_SIZE:
            raise ProofVerificationFailed("pubkey validity", "malformed proof bytes")
        return cls(Ed25519Point.validate(data[:32]), scalar_from_bytes(data[32:]))


@dataclass(frozen=True, slots=True)
class PubkeyValidityProofData:
    """Instruction payload: context || proof."""
    context: PubkeyValidityContext
    proof: PubkeyValidityProof

    PROOF_TYPE = PROOF_IX_PUBKEY_VALIDITY

    @classmethod
    def create(cls, keypair: ElGamalKeypair) -> PubkeyValidityProofData:
        return cls(PubkeyValidityContext(keypair.public), PubkeyValidityProof.prove(keypair))

    def verify(self) -> None:
        self.proof.verify(self.context)

    def to_bytes(self) -> bytes:
        return self.context.to_bytes() + self.proof.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> PubkeyValidityProofData:
        split = PUBKEY_VALIDITY_CONTEXT_SIZE
        return cls(
            PubkeyValidityContext.from_bytes(data[:split]),
            PubkeyValidityProof.from_bytes(data[split:]),
        )
