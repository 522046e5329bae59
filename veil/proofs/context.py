"""
Veil Proof Context Lifecycle

Ephemeral ledger accounts that hold a verified proof context between the
verify instruction and the token instruction that consumes it.

ACCOUNT LAYOUT:
    authority(32) || proof_type(u8) || context payload

    kind                               payload   total
    pubkey validity                         32      65
    ciphertext-commitment equality         128     161
    batched grouped 3-handle validity      352     385
    batched range (u64/u128/u256)          264     297

A context must be created strictly before the instruction that verifies
it and closed afterwards to reclaim its rent. An unclosed context leaks
rent but never corrupts balance state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from veil.constants import (
    CONTEXT_AUTHORITY_SIZE,
    CONTEXT_HEADER_SIZE,
    PUBKEY_VALIDITY_CONTEXT_SIZE,
    EQUALITY_CONTEXT_SIZE,
    GROUPED_3_HANDLES_VALIDITY_CONTEXT_SIZE,
    RANGE_CONTEXT_SIZE,
    PROOF_IX_PUBKEY_VALIDITY,
    PROOF_IX_CIPHERTEXT_COMMITMENT_EQUALITY,
    PROOF_IX_BATCHED_GROUPED_3_HANDLES_VALIDITY,
    PROOF_IX_BATCHED_RANGE_PROOF_U64,
    PROOF_IX_BATCHED_RANGE_PROOF_U128,
    PROOF_IX_BATCHED_RANGE_PROOF_U256,
)
from veil.errors import InvalidProofContext
from veil.protocol import instructions as ix
from veil.protocol.transaction import Instruction, Keypair, Pubkey

logger = logging.getLogger(__name__)


class ProofKind(Enum):
    """Proof kind -> (proof type byte, context payload size)."""

    PUBKEY_VALIDITY = (PROOF_IX_PUBKEY_VALIDITY, PUBKEY_VALIDITY_CONTEXT_SIZE)
    CIPHERTEXT_COMMITMENT_EQUALITY = (
        PROOF_IX_CIPHERTEXT_COMMITMENT_EQUALITY, EQUALITY_CONTEXT_SIZE
    )
    BATCHED_GROUPED_3_HANDLES_VALIDITY = (
        PROOF_IX_BATCHED_GROUPED_3_HANDLES_VALIDITY, GROUPED_3_HANDLES_VALIDITY_CONTEXT_SIZE
    )
    BATCHED_RANGE_U64 = (PROOF_IX_BATCHED_RANGE_PROOF_U64, RANGE_CONTEXT_SIZE)
    BATCHED_RANGE_U128 = (PROOF_IX_BATCHED_RANGE_PROOF_U128, RANGE_CONTEXT_SIZE)
    BATCHED_RANGE_U256 = (PROOF_IX_BATCHED_RANGE_PROOF_U256, RANGE_CONTEXT_SIZE)

    @property
    def proof_type(self) -> int:
        return self.value[0]

    @property
    def payload_size(self) -> int:
        return self.value[1]

    @property
    def account_size(self) -> int:
        return CONTEXT_HEADER_SIZE + self.payload_size

    @classmethod
    def from_proof_type(cls, proof_type: int) -> ProofKind:
        for kind in cls:
            if kind.proof_type == proof_type:
                return kind
        raise InvalidProofContext(f"Unknown proof type {proof_type}")


def context_account_size(kind: ProofKind) -> int:
    return kind.account_size


@dataclass(frozen=True, slots=True)
class ProofContextState:
    """Decoded context account data."""
    authority: Pubkey
    kind: ProofKind
    context: bytes

    def __post_init__(self):
        if len(self.context) != self.kind.payload_size:
            raise InvalidProofContext(
                f"{self.kind.name} context must be {self.kind.payload_size} bytes, "
                f"got {len(self.context)}"
            )

    def to_bytes(self) -> bytes:
        return self.authority.data + bytes([self.kind.proof_type]) + self.context

    @classmethod
    def from_bytes(cls, data: bytes) -> ProofContextState:
        if len(data) < CONTEXT_HEADER_SIZE:
            raise InvalidProofContext("Context account too short")
        kind = ProofKind.from_proof_type(data[CONTEXT_AUTHORITY_SIZE])
        if len(data) != kind.account_size:
            raise InvalidProofContext(
                f"{kind.name} account must be {kind.account_size} bytes, got {len(data)}"
            )
        return cls(
            Pubkey(data[:CONTEXT_AUTHORITY_SIZE]),
            kind,
            bytes(data[CONTEXT_HEADER_SIZE:]),
        )


@dataclass
class ContextHandle:
    """One allocated context account."""
    kind: ProofKind
    keypair: Keypair
    authority: Pubkey
    closed: bool = False

    @property
    def address(self) -> Pubkey:
        return self.keypair.pubkey

    @property
    def size(self) -> int:
        return self.kind.account_size


@dataclass
class ProofContextLifecycle:
    """
    Allocates and closes context accounts for one authority.

    Tracks every handle it hands out so callers can find leaked contexts.
    """
    authority: Pubkey
    payer: Optional[Pubkey] = None
    _handles: Dict[Pubkey, ContextHandle] = field(default_factory=dict)

    def allocate(self, kind: ProofKind) -> ContextHandle:
        """Reserve a fresh ephemeral account for a proof context."""
        handle = ContextHandle(kind, Keypair(), self.authority)
        self._handles[handle.address] = handle
        logger.debug(f"Allocated {kind.name} context {handle.address} ({handle.size} bytes)")
        return handle

    def create_instructions(self, handle: ContextHandle, proof_data) -> List[Instruction]:
        """
        Create the account and verify the proof into it.

        The returned instructions need handle.keypair as an extra signer.
        """
        if handle.closed:
            raise InvalidProofContext(f"Context {handle.address} already closed")
        if proof_data.PROOF_TYPE != handle.kind.proof_type:
            raise InvalidProofContext(
                f"Proof type {proof_data.PROOF_TYPE} does not match {handle.kind.name}"
            )
        payer = self.payer or self.authority
        return [
            ix.create_account(
                payer,
                handle.address,
                ix.rent_exempt_lamports(handle.size),
                handle.size,
                ix.ZK_PROOF_PROGRAM,
            ),
            ix.verify_proof(
                handle.kind.proof_type,
                proof_data.to_bytes(),
                handle.address,
                self.authority,
            ),
        ]

    def close(self, handle: ContextHandle) -> Instruction:
        """Close a context, returning its rent to the authority."""
        if handle.closed:
            raise InvalidProofContext(f"Context {handle.address} already closed")
        handle.closed = True
        self._handles.pop(handle.address, None)
        logger.debug(f"Closing {handle.kind.name} context {handle.address}")
        return ix.close_context_state(handle.address, self.authority, self.authority)

    def reopen(self, handle: ContextHandle) -> None:
        """Track a handle again after its close instruction failed to land."""
        handle.closed = False
        self._handles[handle.address] = handle

    def discard(self, handle: ContextHandle) -> None:
        """Forget a handle whose account was never created."""
        self._handles.pop(handle.address, None)

    def outstanding(self) -> List[ContextHandle]:
        """Handles allocated but never closed."""
        return list(self._handles.values())
