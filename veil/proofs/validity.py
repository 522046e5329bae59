"""
Veil - Batched Grouped-Ciphertext Validity Proof (3 handles)

Proves that two grouped ciphertexts (lo and hi parts of a transfer amount)
are well formed for three pubkeys (sender, recipient, auditor): every
handle uses the same opening as the commitment.

The two statements are batched with a transcript scalar t:

    C   = C_lo + t*C_hi,   D_i = D_lo_i + t*D_hi_i
    x   = x_lo + t*x_hi,   r   = r_lo + t*r_hi

then
    Y0 = yx*G + yr*H,  Y_i = yr*P_i
    zx = c*x + yx,     zr  = c*r + yr

Verification:
    zx*G + zr*H == c*C   + Y0
    zr*P_i      == c*D_i + Y_i    for i in 0..2
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

from veil.constants import (
    CURVE_ORDER,
    GROUPED_3_HANDLES_VALIDITY_CONTEXT_SIZE,
    PROOF_IX_BATCHED_GROUPED_3_HANDLES_VALIDITY,
)
from veil.crypto.ciphertext import GroupedCiphertext3Handles
from veil.crypto.ed25519 import (
    Ed25519Point,
    PedersenGenerators,
    random_scalar,
    scalar_to_bytes,
    scalar_from_bytes,
)
from veil.crypto.elgamal import ElGamalPubkey, PedersenOpening
from veil.crypto.transcript import Transcript
from veil.errors import InvalidProofContext, ProofVerificationFailed

PROOF_SIZE = 4 * 32 + 2 * 32


@dataclass(frozen=True, slots=True)
class GroupedValidityContext:
    """
    Public statement.

    SIZE: 352 bytes
    SERIALIZATION: pubkey_0 || pubkey_1 || pubkey_2 || grouped_lo(128) || grouped_hi(128)
    """
    pubkeys: Tuple[ElGamalPubkey, ElGamalPubkey, ElGamalPubkey]
    grouped_lo: GroupedCiphertext3Handles
    grouped_hi: GroupedCiphertext3Handles

    def to_bytes(self) -> bytes:
        return (
            b"".join(bytes(pk) for pk in self.pubkeys)
            + bytes(self.grouped_lo)
            + bytes(self.grouped_hi)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> GroupedValidityContext:
        if len(data) != GROUPED_3_HANDLES_VALIDITY_CONTEXT_SIZE:
            raise InvalidProofContext(
                f"Validity context must be {GROUPED_3_HANDLES_VALIDITY_CONTEXT_SIZE} bytes, "
                f"got {len(data)}"
            )
        return cls(
            (ElGamalPubkey(data[0:32]), ElGamalPubkey(data[32:64]), ElGamalPubkey(data[64:96])),
            GroupedCiphertext3Handles.from_bytes(data[96:224]),
            GroupedCiphertext3Handles.from_bytes(data[224:352]),
        )


def _transcript(context: GroupedValidityContext) -> Tuple[Transcript, int]:
    t = Transcript(b"batched-grouped-ciphertext-3-handles-validity")
    for i, pk in enumerate(context.pubkeys):
        t.append_point(b"pubkey-%d" % i, bytes(pk))
    t.append_message(b"grouped-lo", bytes(context.grouped_lo))
    t.append_message(b"grouped-hi", bytes(context.grouped_hi))
    batch = t.challenge_scalar(b"t")
    return t, batch


def _batched_statement(
    context: GroupedValidityContext,
    batch: int
) -> Tuple[bytes, Tuple[bytes, bytes, bytes]]:
    lo, hi = context.grouped_lo, context.grouped_hi
    commitment = Ed25519Point.add(lo.commitment, Ed25519Point.scalarmult(batch, hi.commitment))
    handles = tuple(
        Ed25519Point.add(lo.handles[i], Ed25519Point.scalarmult(batch, hi.handles[i]))
        for i in range(3)
    )
    return commitment, handles


@dataclass(frozen=True, slots=True)
class BatchedGroupedValidityProof:
    Y0: bytes
    Y_handles: Tuple[bytes, bytes, bytes]
    zx: int
    zr: int

    @classmethod
    def prove(
        cls,
        context: GroupedValidityContext,
        amount_lo: int,
        amount_hi: int,
        opening_lo: PedersenOpening,
        opening_hi: PedersenOpening,
    ) -> BatchedGroupedValidityProof:
        t, batch = _transcript(context)
        x = (amount_lo + batch * amount_hi) % CURVE_ORDER
        r = (opening_lo.scalar + batch * opening_hi.scalar) % CURVE_ORDER

        yx, yr = random_scalar(), random_scalar()
        Y0 = Ed25519Point.add(
            Ed25519Point.scalarmult_base(yx),
            Ed25519Point.scalarmult(yr, PedersenGenerators.get_H()),
        )
        Y_handles = tuple(Ed25519Point.scalarmult(yr, bytes(pk)) for pk in context.pubkeys)

        t.append_point(b"Y0", Y0)
        for i, Y in enumerate(Y_handles):
            t.append_point(b"Y%d" % (i + 1), Y)
        c = t.challenge_scalar(b"c")

        return cls(Y0, Y_handles, (c * x + yx) % CURVE_ORDER, (c * r + yr) % CURVE_ORDER)

    def verify(self, context: GroupedValidityContext) -> None:
        """Raise ProofVerificationFailed unless the proof holds."""
        for pk in context.pubkeys:
            Ed25519Point.validate(bytes(pk))

        t, batch = _transcript(context)
        commitment, handles = _batched_statement(context, batch)

        t.append_point(b"Y0", self.Y0)
        for i, Y in enumerate(self.Y_handles):
            t.append_point(b"Y%d" % (i + 1), Y)
        c = t.challenge_scalar(b"c")

        lhs = Ed25519Point.add(
            Ed25519Point.scalarmult_base(self.zx),
            Ed25519Point.scalarmult(self.zr, PedersenGenerators.get_H()),
        )
        if lhs != Ed25519Point.add(Ed25519Point.scalarmult(c, commitment), self.Y0):
            raise ProofVerificationFailed("grouped ciphertext validity", "commitment check")

        for pk, D, Y in zip(context.pubkeys, handles, self.Y_handles):
            lhs = Ed25519Point.scalarmult(self.zr, bytes(pk))
            if lhs != Ed25519Point.add(Ed25519Point.scalarmult(c, D), Y):
                raise ProofVerificationFailed("grouped ciphertext validity", "handle check")

    def to_bytes(self) -> bytes:
        return (
            self.Y0 + b"".join(self.Y_handles)
            + scalar_to_bytes(self.zx) + scalar_to_bytes(self.zr)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> BatchedGroupedValidityProof:
        if len(data) != PROOF_SIZE:
            raise ProofVerificationFailed("grouped ciphertext validity", "malformed proof bytes")
        points = [Ed25519Point.validate(data[i:i + 32]) for i in range(0, 128, 32)]
        return cls(
            points[0],
            tuple(points[1:]),
            scalar_from_bytes(data[128:160]),
            scalar_from_bytes(data[160:192]),
        )


@dataclass(frozen=True, slots=True)
class GroupedValidityProofData:
    """Instruction payload: context || proof."""
    context: GroupedValidityContext
    proof: BatchedGroupedValidityProof

    PROOF_TYPE = PROOF_IX_BATCHED_GROUPED_3_HANDLES_VALIDITY

    @classmethod
    def create(
        cls,
        pubkeys: Sequence[ElGamalPubkey],
        grouped_lo: GroupedCiphertext3Handles,
        grouped_hi: GroupedCiphertext3Handles,
        amount_lo: int,
        amount_hi: int,
        opening_lo: PedersenOpening,
        opening_hi: PedersenOpening,
    ) -> GroupedValidityProofData:
        context = GroupedValidityContext(tuple(pubkeys), grouped_lo, grouped_hi)
        proof = BatchedGroupedValidityProof.prove(
            context, amount_lo, amount_hi, opening_lo, opening_hi
        )
        return cls(context, proof)

    def verify(self) -> None:
        self.proof.verify(self.context)

    def to_bytes(self) -> bytes:
        return self.context.to_bytes() + self.proof.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> GroupedValidityProofData:
        split = GROUPED_3_HANDLES_VALIDITY_CONTEXT_SIZE
        return cls(
            GroupedValidityContext.from_bytes(data[:split]),
            BatchedGroupedValidityProof.from_bytes(data[split:]),
        )
