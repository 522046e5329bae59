"""
Veil - Confidential Token Balances and Selective-Disclosure Receipts

Encrypted balances on a Token-2022 style ledger (twisted ElGamal over the
Ed25519 prime-order group, sigma-protocol proofs) and zero-knowledge
payment receipts that reveal only what the payer chooses.

Layers:
    veil.crypto     group operations, ElGamal, ciphertext algebra, AES-GCM
    veil.proofs     equality / validity / range proofs, proof contexts
    veil.keys       signature-derived keys
    veil.state      account balance decoding
    veil.protocol   instructions, transactions, submission, state machine
    veil.ledger     JSON-RPC ledger adapter
    veil.receipts   payment references, disclosure, prover, receipts
    veil.session    explicit per-caller session
"""

__version__ = "0.1.0"

from veil.errors import VeilError, ErrorCode
from veil.config import VeilConfig, setup_logging
from veil.session import Session

__all__ = [
    "__version__",
    "VeilError",
    "ErrorCode",
    "VeilConfig",
    "setup_logging",
    "Session",
]
