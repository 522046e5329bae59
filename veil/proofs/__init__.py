"""
Veil Zero-Knowledge Proofs

Sigma-protocol proofs over ElGamal ciphertexts and Pedersen commitments,
plus the lifecycle of the ledger accounts that hold verified contexts.
"""

from veil.proofs.pubkey_validity import PubkeyValidityProof, PubkeyValidityProofData
from veil.proofs.equality import CiphertextCommitmentEqualityProof, EqualityProofData
from veil.proofs.validity import BatchedGroupedValidityProof, GroupedValidityProofData
from veil.proofs.range import (
    BatchedRangeProofU64,
    BatchedRangeProofU128,
    BatchedRangeProofU256,
    RangeProofData,
    validate_bit_lengths,
)
from veil.proofs.context import ProofKind, ProofContextLifecycle, ContextHandle, ProofContextState

__all__ = [
    "PubkeyValidityProof",
    "PubkeyValidityProofData",
    "CiphertextCommitmentEqualityProof",
    "EqualityProofData",
    "BatchedGroupedValidityProof",
    "GroupedValidityProofData",
    "BatchedRangeProofU64",
    "BatchedRangeProofU128",
    "BatchedRangeProofU256",
    "RangeProofData",
    "validate_bit_lengths",
    "ProofKind",
    "ProofContextLifecycle",
    "ContextHandle",
    "ProofContextState",
]
