"""
Veil Selective-Disclosure Receipts

Prove that a payment happened while choosing which of its fields stay
private.
"""

from veil.receipts.payment_ref import generate_payment_ref, generate_nonce, payment_preimage
from veil.receipts.disclosure import (
    CircuitInputs,
    DisclosurePolicy,
    PaymentRecord,
    PaymentStatus,
    PublicInputs,
    build_circuit_inputs,
)
from veil.receipts.prover import NoirCliBackend, ProverBackend, ReceiptProver
from veil.receipts.receipt import Receipt, generate_receipt, verify_receipt

__all__ = [
    "generate_payment_ref",
    "generate_nonce",
    "payment_preimage",
    "CircuitInputs",
    "DisclosurePolicy",
    "PaymentRecord",
    "PaymentStatus",
    "PublicInputs",
    "build_circuit_inputs",
    "NoirCliBackend",
    "ProverBackend",
    "ReceiptProver",
    "Receipt",
    "generate_receipt",
    "verify_receipt",
]
