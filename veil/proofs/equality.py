"""
Veil - Ciphertext-Commitment Equality Proof

Proves that an ElGamal ciphertext (C_ct, D) under pubkey P and a Pedersen
commitment C_cm = x*G + r*H hide the same amount x. The prover knows the
secret key s, the amount x and the commitment opening r.

    Y0 = ys*P
    Y1 = yx*G + ys*D
    Y2 = yx*G + yr*H
    c  = Challenge(P, C_ct, D, C_cm, Y0, Y1, Y2)
    zs = c*s + ys,  zx = c*x + yx,  zr = c*r + yr

Verification:
    zs*P         == c*H    + Y0
    zx*G + zs*D  == c*C_ct + Y1
    zx*G + zr*H  == c*C_cm + Y2
"""

from __future__ import annotations

from dataclasses import dataclass

from veil.constants import (
    CURVE_ORDER,
    EQUALITY_CONTEXT_SIZE,
    PROOF_IX_CIPHERTEXT_COMMITMENT_EQUALITY,
)
from veil.crypto.ciphertext import Ciphertext
from veil.crypto.ed25519 import (
    Ed25519Point,
    PedersenGenerators,
    random_scalar,
    scalar_to_bytes,
    scalar_from_bytes,
)
from veil.crypto.elgamal import ElGamalKeypair, ElGamalPubkey, PedersenOpening
from veil.crypto.transcript import Transcript
from veil.errors import InvalidProofContext, ProofVerificationFailed

PROOF_SIZE = 3 * 32 + 3 * 32


@dataclass(frozen=True, slots=True)
class EqualityContext:
    """
    Public statement.

    SIZE: 128 bytes
    SERIALIZATION: pubkey(32) || ciphertext(64) || commitment(32)
    """
    pubkey: ElGamalPubkey
    ciphertext: Ciphertext
    commitment: bytes

    def to_bytes(self) -> bytes:
        return bytes(self.pubkey) + bytes(self.ciphertext) + self.commitment

    @classmethod
    def from_bytes(cls, data: bytes) -> EqualityContext:
        if len(data) != EQUALITY_CONTEXT_SIZE:
            raise InvalidProofContext(
                f"Equality context must be {EQUALITY_CONTEXT_SIZE} bytes, got {len(data)}"
            )
        return cls(
            ElGamalPubkey(data[:32]),
            Ciphertext.from_bytes(data[32:96]),
            data[96:128],
        )


def _transcript(context: EqualityContext) -> Transcript:
    t = Transcript(b"ciphertext-commitment-equality")
    t.append_point(b"pubkey", bytes(context.pubkey))
    t.append_message(b"ciphertext", bytes(context.ciphertext))
    t.append_point(b"commitment", context.commitment)
    return t


@dataclass(frozen=True, slots=True)
class CiphertextCommitmentEqualityProof:
    Y0: bytes
    Y1: bytes
    Y2: bytes
    zs: int
    zx: int
    zr: int

    @classmethod
    def prove(
        cls,
        keypair: ElGamalKeypair,
        ciphertext: Ciphertext,
        amount: int,
        opening: PedersenOpening,
        commitment: bytes,
    ) -> CiphertextCommitmentEqualityProof:
        P = bytes(keypair.public)
        H = PedersenGenerators.get_H()
        t = _transcript(EqualityContext(keypair.public, ciphertext, commitment))

        ys, yx, yr = random_scalar(), random_scalar(), random_scalar()
        Y0 = Ed25519Point.scalarmult(ys, P)
        Y1 = Ed25519Point.add(
            Ed25519Point.scalarmult_base(yx),
            Ed25519Point.scalarmult(ys, ciphertext.handle),
        )
        Y2 = Ed25519Point.add(
            Ed25519Point.scalarmult_base(yx),
            Ed25519Point.scalarmult(yr, H),
        )
        t.append_point(b"Y0", Y0)
        t.append_point(b"Y1", Y1)
        t.append_point(b"Y2", Y2)
        c = t.challenge_scalar(b"c")

        return cls(
            Y0, Y1, Y2,
            (c * keypair.secret.scalar + ys) % CURVE_ORDER,
            (c * amount + yx) % CURVE_ORDER,
            (c * opening.scalar + yr) % CURVE_ORDER,
        )

    def verify(self, context: EqualityContext) -> None:
        """Raise ProofVerificationFailed unless the proof holds."""
        P = Ed25519Point.validate(bytes(context.pubkey))
        C_ct = Ed25519Point.validate(context.ciphertext.commitment)
        D = Ed25519Point.validate(context.ciphertext.handle)
        C_cm = Ed25519Point.validate(context.commitment)
        H = PedersenGenerators.get_H()

        t = _transcript(context)
        t.append_point(b"Y0", self.Y0)
        t.append_point(b"Y1", self.Y1)
        t.append_point(b"Y2", self.Y2)
        c = t.challenge_scalar(b"c")

        check0 = Ed25519Point.scalarmult(self.zs, P) == Ed25519Point.add(
            Ed25519Point.scalarmult(c, H), self.Y0
        )
        check1 = Ed25519Point.add(
            Ed25519Point.scalarmult_base(self.zx),
            Ed25519Point.scalarmult(self.zs, D),
        ) == Ed25519Point.add(Ed25519Point.scalarmult(c, C_ct), self.Y1)
        check2 = Ed25519Point.add(
            Ed25519Point.scalarmult_base(self.zx),
            Ed25519Point.scalarmult(self.zr, H),
        ) == Ed25519Point.add(Ed25519Point.scalarmult(c, C_cm), self.Y2)

        if not (check0 and check1 and check2):
            raise ProofVerificationFailed("ciphertext-commitment equality")

    def to_bytes(self) -> bytes:
        return (
            self.Y0 + self.Y1 + self.Y2
            + scalar_to_bytes(self.zs)
            + scalar_to_bytes(self.zx)
            + scalar_to_bytes(self.zr)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> CiphertextCommitmentEqualityProof:
        if len(data) != PROOF_SIZE:
            raise ProofVerificationFailed("ciphertext-commitment equality", "malformed proof bytes")
        points = [Ed25519Point.validate(data[i:i + 32]) for i in (0, 32, 64)]
        scalars = [scalar_from_bytes(data[i:i + 32]) for i in (96, 128, 160)]
        return cls(*points, *scalars)


@dataclass(frozen=True, slots=True)
class EqualityProofData:
    """Instruction payload: context || proof."""
    context: EqualityContext
    proof: CiphertextCommitmentEqualityProof

    PROOF_TYPE = PROOF_IX_CIPHERTEXT_COMMITMENT_EQUALITY

    @classmethod
    def create(
        cls,
        keypair: ElGamalKeypair,
        ciphertext: Ciphertext,
        amount: int,
        opening: PedersenOpening,
        commitment: bytes,
    ) -> EqualityProofData:
        proof = CiphertextCommitmentEqualityProof.prove(
            keypair, ciphertext, amount, opening, commitment
        )
        return cls(EqualityContext(keypair.public, ciphertext, commitment), proof)

    def verify(self) -> None:
        self.proof.verify(self.context)

    def to_bytes(self) -> bytes:
        return self.context.to_bytes() + self.proof.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> EqualityProofData:
        return cls(
            EqualityContext.from_bytes(data[:EQUALITY_CONTEXT_SIZE]),
            CiphertextCommitmentEqualityProof.from_bytes(data[EQUALITY_CONTEXT_SIZE:]),
        )
