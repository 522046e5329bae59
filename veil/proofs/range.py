"""
Veil - Batched Range Proof

Proves that each Pedersen commitment C_j = v_j*G + r_j*H opens to a value
in [0, 2^n_j), for up to 8 commitments whose bit lengths sum to a fixed
total (64, 128 or 256).

Construction: bit decomposition. Every bit b_i gets a commitment
B_i = b_i*G + s_i*H with the blindings constrained so that

    sum_i 2^i * s_i == r_j    =>    sum_i 2^i * B_i == C_j

and each B_i carries a Cramer-Damgard-Schoenmakers OR proof that it
commits to 0 or 1 (knowledge of log_H of B_i or of B_i - G):

    T0 = z0*H - c0*B
    T1 = z1*H - c1*(B - G)
    c0 + c1 == Challenge(B, T0, T1)

Per-bit proof: B(32) || c0(32) || c1(32) || z0(32) || z1(32)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from veil.constants import (
    CURVE_ORDER,
    BALANCE_BITS,
    RANGE_CONTEXT_SIZE,
    RANGE_PROOF_MAX_COMMITMENTS,
    RANGE_U64_TOTAL_BITS,
    RANGE_U128_TOTAL_BITS,
    RANGE_U256_TOTAL_BITS,
    PROOF_IX_BATCHED_RANGE_PROOF_U64,
    PROOF_IX_BATCHED_RANGE_PROOF_U128,
    PROOF_IX_BATCHED_RANGE_PROOF_U256,
    IDENTITY_POINT,
)
from veil.crypto.ed25519 import (
    Ed25519Point,
    PedersenGenerators,
    random_scalar,
    scalar_invert,
    scalar_to_bytes,
    scalar_from_bytes,
)
from veil.crypto.elgamal import PedersenOpening, pedersen_commit
from veil.crypto.transcript import Transcript
from veil.errors import InvalidProofContext, InvalidRangeSplit, ProofVerificationFailed

BIT_PROOF_SIZE = 160


# ============================================================================
# SPLIT VALIDATION
# ============================================================================

def validate_bit_lengths(bit_lengths: Sequence[int], total_bits: int) -> None:
    """
    Check a bit-length allocation for a batched range proof.

    Raises InvalidRangeSplit unless there are 1..8 entries, each within
    1..64 bits, summing exactly to total_bits.
    """
    lengths = list(bit_lengths)
    if not 0 < len(lengths) <= RANGE_PROOF_MAX_COMMITMENTS:
        raise InvalidRangeSplit(
            f"Range proof takes 1..{RANGE_PROOF_MAX_COMMITMENTS} commitments, got {len(lengths)}",
            lengths,
        )
    if any(not 0 < n <= BALANCE_BITS for n in lengths):
        raise InvalidRangeSplit(f"Bit lengths must be within 1..{BALANCE_BITS}", lengths)
    if sum(lengths) != total_bits:
        raise InvalidRangeSplit(
            f"Bit lengths sum to {sum(lengths)}, expected {total_bits}", lengths
        )


# ============================================================================
# CONTEXT
# ============================================================================

@dataclass(frozen=True, slots=True)
class RangeProofContext:
    """
    Public statement.

    SIZE: 264 bytes
    SERIALIZATION: commitments[8] (32 each, identity padded) || bit_lengths[8] (u8, zero padded)
    """
    commitments: Tuple[bytes, ...]
    bit_lengths: Tuple[int, ...]

    def __post_init__(self):
        if len(self.commitments) != len(self.bit_lengths):
            raise InvalidProofContext("Commitment and bit length counts differ")
        if len(self.commitments) > RANGE_PROOF_MAX_COMMITMENTS:
            raise InvalidProofContext("Too many commitments")

    def to_bytes(self) -> bytes:
        pad = RANGE_PROOF_MAX_COMMITMENTS - len(self.commitments)
        return (
            b"".join(self.commitments) + IDENTITY_POINT * pad
            + bytes(self.bit_lengths) + bytes(pad)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> RangeProofContext:
        if len(data) != RANGE_CONTEXT_SIZE:
            raise InvalidProofContext(
                f"Range context must be {RANGE_CONTEXT_SIZE} bytes, got {len(data)}"
            )
        slots = RANGE_PROOF_MAX_COMMITMENTS
        lengths = data[slots * 32:]
        count = next((i for i, n in enumerate(lengths) if n == 0), slots)
        return cls(
            tuple(bytes(data[i * 32:(i + 1) * 32]) for i in range(count)),
            tuple(lengths[:count]),
        )


def _transcript(context: RangeProofContext) -> Transcript:
    t = Transcript(b"batched-range-proof")
    for commitment, n in zip(context.commitments, context.bit_lengths):
        t.append_point(b"commitment", commitment)
        t.append_u64(b"bit-length", n)
    return t


# ============================================================================
# BIT PROOFS
# ============================================================================

@dataclass(frozen=True, slots=True)
class BitProof:
    B: bytes
    c0: int
    c1: int
    z0: int
    z1: int

    def to_bytes(self) -> bytes:
        return self.B + b"".join(
            scalar_to_bytes(s) for s in (self.c0, self.c1, self.z0, self.z1)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> BitProof:
        return cls(
            Ed25519Point.validate(data[:32]),
            *(scalar_from_bytes(data[i:i + 32]) for i in (32, 64, 96, 128)),
        )


def _bit_blindings(opening: int, n: int) -> List[int]:
    """n blindings s_i with sum 2^i * s_i == opening (mod L)."""
    blindings = [random_scalar() for _ in range(n - 1)]
    partial = sum(s << i for i, s in enumerate(blindings)) % CURVE_ORDER
    last = ((opening - partial) * scalar_invert(1 << (n - 1))) % CURVE_ORDER
    blindings.append(last)
    return blindings


def _prove_bit(t: Transcript, bit: int, blinding: int) -> BitProof:
    G = PedersenGenerators.get_G()
    H = PedersenGenerators.get_H()
    B = Ed25519Point.add(Ed25519Point.scalarmult_base(bit), Ed25519Point.scalarmult(blinding, H))
    targets = (B, Ed25519Point.sub(B, G))

    # Simulated branch for the bit value we do not hold
    other = 1 - bit
    c = [0, 0]
    z = [0, 0]
    T = [IDENTITY_POINT, IDENTITY_POINT]
    c[other], z[other] = random_scalar(), random_scalar()
    T[other] = Ed25519Point.sub(
        Ed25519Point.scalarmult(z[other], H),
        Ed25519Point.scalarmult(c[other], targets[other]),
    )
    w = random_scalar()
    T[bit] = Ed25519Point.scalarmult(w, H)

    t.append_point(b"B", B)
    t.append_point(b"T0", T[0])
    t.append_point(b"T1", T[1])
    challenge = t.challenge_scalar(b"c")

    c[bit] = (challenge - c[other]) % CURVE_ORDER
    z[bit] = (w + c[bit] * blinding) % CURVE_ORDER
    return BitProof(B, c[0], c[1], z[0], z[1])


def _verify_bit(t: Transcript, proof: BitProof) -> bool:
    G = PedersenGenerators.get_G()
    H = PedersenGenerators.get_H()
    T0 = Ed25519Point.sub(
        Ed25519Point.scalarmult(proof.z0, H),
        Ed25519Point.scalarmult(proof.c0, proof.B),
    )
    T1 = Ed25519Point.sub(
        Ed25519Point.scalarmult(proof.z1, H),
        Ed25519Point.scalarmult(proof.c1, Ed25519Point.sub(proof.B, G)),
    )
    t.append_point(b"B", proof.B)
    t.append_point(b"T0", T0)
    t.append_point(b"T1", T1)
    challenge = t.challenge_scalar(b"c")
    return (proof.c0 + proof.c1) % CURVE_ORDER == challenge


# ============================================================================
# BATCHED PROOF
# ============================================================================

class BatchedRangeProof:
    """
    Batched range proof over a fixed total bit budget.

    Subclasses fix TOTAL_BITS and PROOF_TYPE.
    """

    TOTAL_BITS: int = 0
    PROOF_TYPE: int = -1
    NAME: str = "range"

    def __init__(self, bit_proofs: Sequence[BitProof]):
        self.bit_proofs = list(bit_proofs)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, BatchedRangeProof):
            return self.to_bytes() == other.to_bytes()
        return False

    def __hash__(self) -> int:
        return hash(self.to_bytes())

    @classmethod
    def prove(
        cls,
        amounts: Sequence[int],
        bit_lengths: Sequence[int],
        openings: Sequence[PedersenOpening],
    ) -> Tuple[RangeProofContext, BatchedRangeProof]:
        """Build context and proof; raise InvalidRangeSplit on a bad allocation."""
        if not len(amounts) == len(bit_lengths) == len(openings):
            raise InvalidRangeSplit("Amounts, bit lengths and openings differ in count")
        validate_bit_lengths(bit_lengths, cls.TOTAL_BITS)
        for amount, n in zip(amounts, bit_lengths):
            if not 0 <= amount < (1 << n):
                raise InvalidRangeSplit(f"Amount does not fit in {n} bits", list(bit_lengths))

        commitments = tuple(pedersen_commit(v, r) for v, r in zip(amounts, openings))
        context = RangeProofContext(commitments, tuple(bit_lengths))

        t = _transcript(context)
        bit_proofs = []
        for amount, n, opening in zip(amounts, bit_lengths, openings):
            for i, blinding in enumerate(_bit_blindings(opening.scalar, n)):
                bit_proofs.append(_prove_bit(t, (amount >> i) & 1, blinding))
        return context, cls(bit_proofs)

    def verify(self, context: RangeProofContext) -> None:
        """Raise ProofVerificationFailed unless every commitment is in range."""
        try:
            validate_bit_lengths(context.bit_lengths, self.TOTAL_BITS)
        except InvalidRangeSplit as e:
            raise ProofVerificationFailed(self.NAME, e.message) from e
        if len(self.bit_proofs) != self.TOTAL_BITS:
            raise ProofVerificationFailed(self.NAME, "wrong number of bit proofs")

        t = _transcript(context)
        proofs = iter(self.bit_proofs)
        for commitment, n in zip(context.commitments, context.bit_lengths):
            Ed25519Point.validate(commitment)
            recombined = IDENTITY_POINT
            for i in range(n):
                proof = next(proofs)
                if not _verify_bit(t, proof):
                    raise ProofVerificationFailed(self.NAME, "bit is not 0 or 1")
                recombined = Ed25519Point.add(
                    recombined, Ed25519Point.scalarmult(1 << i, proof.B)
                )
            if recombined != commitment:
                raise ProofVerificationFailed(self.NAME, "bit commitments do not recombine")

    def to_bytes(self) -> bytes:
        return b"".join(p.to_bytes() for p in self.bit_proofs)

    @classmethod
    def from_bytes(cls, data: bytes) -> BatchedRangeProof:
        if len(data) != cls.TOTAL_BITS * BIT_PROOF_SIZE:
            raise ProofVerificationFailed(cls.NAME, "malformed proof bytes")
        return cls([
            BitProof.from_bytes(data[i:i + BIT_PROOF_SIZE])
            for i in range(0, len(data), BIT_PROOF_SIZE)
        ])


class BatchedRangeProofU64(BatchedRangeProof):
    TOTAL_BITS = RANGE_U64_TOTAL_BITS
    PROOF_TYPE = PROOF_IX_BATCHED_RANGE_PROOF_U64
    NAME = "range u64"


class BatchedRangeProofU128(BatchedRangeProof):
    TOTAL_BITS = RANGE_U128_TOTAL_BITS
    PROOF_TYPE = PROOF_IX_BATCHED_RANGE_PROOF_U128
    NAME = "range u128"


class BatchedRangeProofU256(BatchedRangeProof):
    TOTAL_BITS = RANGE_U256_TOTAL_BITS
    PROOF_TYPE = PROOF_IX_BATCHED_RANGE_PROOF_U256
    NAME = "range u256"


RANGE_PROOF_KINDS = {
    cls.PROOF_TYPE: cls
    for cls in (BatchedRangeProofU64, BatchedRangeProofU128, BatchedRangeProofU256)
}


@dataclass(frozen=True)
class RangeProofData:
    """Instruction payload: context || proof."""
    context: RangeProofContext
    proof: BatchedRangeProof

    @property
    def PROOF_TYPE(self) -> int:
        return self.proof.PROOF_TYPE

    @classmethod
    def create(
        cls,
        proof_cls: type,
        amounts: Sequence[int],
        bit_lengths: Sequence[int],
        openings: Sequence[PedersenOpening],
    ) -> RangeProofData:
        context, proof = proof_cls.prove(amounts, bit_lengths, openings)
        return cls(context, proof)

    def verify(self) -> None:
        self.proof.verify(self.context)

    def to_bytes(self) -> bytes:
        return self.context.to_bytes() + self.proof.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes, proof_type: int) -> RangeProofData:
        proof_cls = RANGE_PROOF_KINDS.get(proof_type)
        if proof_cls is None:
            raise InvalidProofContext(f"Unknown range proof type {proof_type}")
        return cls(
            RangeProofContext.from_bytes(data[:RANGE_CONTEXT_SIZE]),
            proof_cls.from_bytes(data[RANGE_CONTEXT_SIZE:]),
        )
