"""
Veil Receipts

A receipt is a proof plus the public inputs it verifies against, wrapped
in a versioned JSON envelope:

    {
      "type": "zk-receipt",
      "version": 1,
      "invoiceId": str,
      "paymentRef": hex,
      "createdAt": epoch ms,
      "disclosure": {revealInvoiceId, revealRecipient, minAmount, maxAmount},
      "publicInputs": {...},
      "proof": base64
    }

Loading an envelope and verifying it gives the same result as verifying
the receipt before it was saved.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from veil.constants import INVOICE_ID_FIELD_SIZE, RECEIPT_TYPE, RECEIPT_VERSION
from veil.errors import InvalidParameterError, InvalidReceipt
from veil.receipts.disclosure import (
    DisclosurePolicy,
    PaymentRecord,
    PublicInputs,
    build_circuit_inputs,
)
from veil.receipts.payment_ref import fixed_width
from veil.receipts.prover import ReceiptProver

logger = logging.getLogger(__name__)


def _disclosure_mismatches(receipt: Receipt) -> List[str]:
    """Disclosure fields the public inputs (what the proof binds) do not back."""
    policy = receipt.disclosure
    public = receipt.public_inputs
    mismatched = []

    if policy.reveal_invoice_id:
        revealed = fixed_width(receipt.invoice_id, INVOICE_ID_FIELD_SIZE)
        if not any(public.invoice_id) or public.invoice_id != revealed:
            mismatched.append("revealInvoiceId")
    elif any(public.invoice_id):
        mismatched.append("revealInvoiceId")

    if policy.reveal_recipient != any(public.recipient):
        mismatched.append("revealRecipient")

    bounds = (
        ("minAmount", policy.min_amount, public.enforce_min, public.min_amount),
        ("maxAmount", policy.max_amount, public.enforce_max, public.max_amount),
    )
    for name, bound, enforced, value in bounds:
        if enforced != (bound is not None) or value != (bound or 0):
            mismatched.append(name)
    return mismatched


@dataclass(frozen=True)
class Receipt:
    invoice_id: str
    payment_ref: str
    created_at: int
    disclosure: DisclosurePolicy
    public_inputs: PublicInputs
    proof: bytes
    version: int = RECEIPT_VERSION

    @property
    def default_filename(self) -> str:
        return f"zk-receipt-{self.invoice_id[:8]}.json"

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "type": RECEIPT_TYPE,
            "version": self.version,
            "invoiceId": self.invoice_id,
            "paymentRef": self.payment_ref,
            "createdAt": self.created_at,
            "disclosure": self.disclosure.to_dict(),
            "publicInputs": self.public_inputs.to_dict(),
            "proof": base64.b64encode(self.proof).decode("ascii"),
        }

    @classmethod
    def from_envelope(cls, data: Dict[str, Any]) -> Receipt:
        """
        Parse an envelope.

        Raises InvalidReceipt on a wrong type or version, missing fields,
        public inputs bound to a different payment reference, or a
        disclosure block the public inputs do not back.
        """
        if not isinstance(data, dict) or data.get("type") != RECEIPT_TYPE:
            raise InvalidReceipt("Not a zk-receipt envelope")
        if data.get("version") != RECEIPT_VERSION:
            raise InvalidReceipt(f"Unsupported receipt version {data.get('version')}")

        try:
            proof = base64.b64decode(data["proof"], validate=True)
            receipt = cls(
                invoice_id=str(data["invoiceId"]),
                payment_ref=str(data["paymentRef"]).lower(),
                created_at=int(data["createdAt"]),
                disclosure=DisclosurePolicy.from_dict(data.get("disclosure") or {}),
                public_inputs=PublicInputs.from_dict(data["publicInputs"]),
                proof=proof,
                version=data["version"],
            )
        except (KeyError, TypeError, ValueError, binascii.Error, InvalidParameterError) as e:
            raise InvalidReceipt(f"Malformed envelope: {e}") from e

        if receipt.public_inputs.payment_ref.hex() != receipt.payment_ref:
            raise InvalidReceipt("Public inputs are bound to a different payment_ref")
        mismatched = _disclosure_mismatches(receipt)
        if mismatched:
            raise InvalidReceipt(
                f"Disclosure disagrees with public inputs: {', '.join(mismatched)}"
            )
        return receipt

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_envelope(), indent=indent)

    @classmethod
    def from_json(cls, text: str) -> Receipt:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidReceipt(f"Not JSON: {e}") from e
        return cls.from_envelope(data)

    def save(self, path: Union[str, Path, None] = None) -> Path:
        """Write the envelope; a directory or None picks the default filename."""
        target = Path(path) if path is not None else Path(self.default_filename)
        if target.is_dir():
            target = target / self.default_filename
        target.write_text(self.to_json())
        logger.info(f"Receipt for {self.invoice_id} saved to {target}")
        return target

    @classmethod
    def load(cls, path: Union[str, Path]) -> Receipt:
        return cls.from_json(Path(path).read_text())


async def generate_receipt(
    prover: ReceiptProver,
    record: PaymentRecord,
    policy: Optional[DisclosurePolicy] = None,
    clock: Callable[[], float] = time.time,
) -> Receipt:
    """
    Prove a paid record under a disclosure policy.

    Raises ReceiptNotAvailable, PaymentRefMismatch, ProverNotInitialized
    or ProofGenerationFailed.
    """
    policy = policy or DisclosurePolicy()
    inputs = build_circuit_inputs(record, policy)
    logger.info(f"Generating receipt for {record.invoice_id} (may take 10-30 seconds)")
    proof = await prover.prove(inputs)
    return Receipt(
        invoice_id=record.invoice_id,
        payment_ref=inputs.public.payment_ref.hex(),
        created_at=int(clock() * 1000),
        disclosure=policy,
        public_inputs=inputs.public,
        proof=proof,
    )


async def verify_receipt(
    prover: ReceiptProver,
    receipt: Receipt,
    expected_payment_ref: Optional[str] = None,
) -> bool:
    """
    Verify a receipt, optionally against a payment_ref derived elsewhere.

    A payment_ref mismatch is a failed verification, not an error.
    """
    if expected_payment_ref is not None:
        expected = expected_payment_ref.lower().removeprefix("0x")
        if expected != receipt.payment_ref:
            logger.warning(
                f"Receipt {receipt.invoice_id} is for payment_ref {receipt.payment_ref[:16]}..., "
                f"expected {expected[:16]}..."
            )
            return False
    return await prover.verify(receipt.proof, receipt.public_inputs)
