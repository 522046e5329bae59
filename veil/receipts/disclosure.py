"""
Veil Selective Disclosure

Turns a paid payment record plus a disclosure policy into receipt circuit
inputs.

PRIVATE INPUTS (never leave the prover):
    invoice_id(36) || sender(44) || recipient(44) || amount(20) || nonce(64)

PUBLIC INPUTS:
    payment_ref      32 bytes, always present
    invoice_id       36 bytes, zero unless reveal_invoice_id
    recipient        44 bytes, zero unless reveal_recipient
    min_amount       u64, enforced only when enforce_min
    max_amount       u64, enforced only when enforce_max

An unset bound is unbounded: its value and enforcement flag are both zero.
An explicit bound of zero sets the flag, so "between 0 and 0" stays
distinguishable from "no bound".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from veil.constants import (
    INVOICE_ID_FIELD_SIZE,
    IDENTITY_FIELD_SIZE,
    NONCE_FIELD_SIZE,
    PAYMENT_REF_SIZE,
)
from veil.errors import (
    InvalidParameterError,
    InvalidReceipt,
    PaymentRefMismatch,
    ProofGenerationFailed,
    ReceiptNotAvailable,
)
from veil.receipts.payment_ref import (
    amount_field,
    fixed_width,
    generate_payment_ref,
    payment_ref_bytes,
)

logger = logging.getLogger(__name__)

U64_MAX = (1 << 64) - 1


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


@dataclass
class PaymentRecord:
    """A payment as kept in the invoice store."""
    invoice_id: str
    sender: str
    recipient: str
    amount: int
    status: PaymentStatus = PaymentStatus.PENDING
    nonce: Optional[str] = None
    payment_ref: Optional[str] = None
    tx_signature: Optional[str] = None
    paid_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoiceId": self.invoice_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": self.amount,
            "status": self.status.value,
            "paymentNonce": self.nonce,
            "paymentRef": self.payment_ref,
            "txSignature": self.tx_signature,
            "paidAt": self.paid_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PaymentRecord:
        return cls(
            invoice_id=data["invoiceId"],
            sender=data["sender"],
            recipient=data["recipient"],
            amount=int(data["amount"]),
            status=PaymentStatus(data.get("status", "pending")),
            nonce=data.get("paymentNonce"),
            payment_ref=data.get("paymentRef"),
            tx_signature=data.get("txSignature"),
            paid_at=data.get("paidAt"),
        )


@dataclass(frozen=True)
class DisclosurePolicy:
    """
    What a receipt reveals.

    Defaults reveal nothing beyond the payment reference.
    """
    reveal_invoice_id: bool = False
    reveal_recipient: bool = False
    min_amount: Optional[int] = None
    max_amount: Optional[int] = None

    def __post_init__(self):
        for name in ("min_amount", "max_amount"):
            value = getattr(self, name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= U64_MAX:
                raise InvalidParameterError(name, "must be a u64")
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise InvalidParameterError("min_amount", "exceeds max_amount")

    def admits(self, amount: int) -> bool:
        if self.min_amount is not None and amount < self.min_amount:
            return False
        if self.max_amount is not None and amount > self.max_amount:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revealInvoiceId": self.reveal_invoice_id,
            "revealRecipient": self.reveal_recipient,
            "minAmount": self.min_amount,
            "maxAmount": self.max_amount,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DisclosurePolicy:
        return cls(
            reveal_invoice_id=bool(data.get("revealInvoiceId", False)),
            reveal_recipient=bool(data.get("revealRecipient", False)),
            min_amount=data.get("minAmount"),
            max_amount=data.get("maxAmount"),
        )


@dataclass(frozen=True)
class PrivateInputs:
    invoice_id: bytes
    sender: bytes
    recipient: bytes
    amount: bytes
    nonce: bytes

    @property
    def preimage(self) -> bytes:
        return self.invoice_id + self.sender + self.recipient + self.amount + self.nonce


@dataclass(frozen=True)
class PublicInputs:
    """Values the verifier sees."""
    payment_ref: bytes
    invoice_id: bytes = bytes(INVOICE_ID_FIELD_SIZE)
    recipient: bytes = bytes(IDENTITY_FIELD_SIZE)
    min_amount: int = 0
    max_amount: int = 0
    enforce_min: bool = False
    enforce_max: bool = False

    def __post_init__(self):
        sizes = (
            ("payment_ref", self.payment_ref, PAYMENT_REF_SIZE),
            ("invoice_id", self.invoice_id, INVOICE_ID_FIELD_SIZE),
            ("recipient", self.recipient, IDENTITY_FIELD_SIZE),
        )
        for name, value, size in sizes:
            if len(value) != size:
                raise InvalidReceipt(f"Public {name} must be {size} bytes, got {len(value)}")

    @property
    def revealed_invoice_id(self) -> Optional[str]:
        if not any(self.invoice_id):
            return None
        return self.invoice_id.rstrip(b"\x00").decode("utf-8", errors="replace")

    @property
    def revealed_recipient(self) -> Optional[str]:
        if not any(self.recipient):
            return None
        return self.recipient.rstrip(b"\x00").decode("utf-8", errors="replace")

    def field_elements(self) -> List[int]:
        """Flattened public inputs in circuit order, one byte or u64 per element."""
        return [
            *self.payment_ref,
            *self.invoice_id,
            *self.recipient,
            self.min_amount,
            self.max_amount,
            int(self.enforce_min),
            int(self.enforce_max),
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paymentRef": self.payment_ref.hex(),
            "invoiceId": self.invoice_id.hex(),
            "recipient": self.recipient.hex(),
            "minAmount": self.min_amount,
            "maxAmount": self.max_amount,
            "enforceMin": self.enforce_min,
            "enforceMax": self.enforce_max,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PublicInputs:
        try:
            return cls(
                payment_ref=bytes.fromhex(data["paymentRef"]),
                invoice_id=bytes.fromhex(data["invoiceId"]),
                recipient=bytes.fromhex(data["recipient"]),
                min_amount=int(data["minAmount"]),
                max_amount=int(data["maxAmount"]),
                enforce_min=bool(data["enforceMin"]),
                enforce_max=bool(data["enforceMax"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidReceipt(f"Malformed public inputs: {e}") from e


@dataclass(frozen=True)
class CircuitInputs:
    private: PrivateInputs
    public: PublicInputs

    def to_prover_dict(self) -> Dict[str, Any]:
        """Named circuit parameters as byte arrays and integers."""
        return {
            "invoice_id": list(self.private.invoice_id),
            "sender": list(self.private.sender),
            "recipient": list(self.private.recipient),
            "amount": list(self.private.amount),
            "nonce": list(self.private.nonce),
            "payment_ref": list(self.public.payment_ref),
            "public_invoice_id": list(self.public.invoice_id),
            "public_recipient": list(self.public.recipient),
            "min_amount": self.public.min_amount,
            "max_amount": self.public.max_amount,
            "enforce_min": self.public.enforce_min,
            "enforce_max": self.public.enforce_max,
        }


def build_circuit_inputs(
    record: PaymentRecord,
    policy: Optional[DisclosurePolicy] = None
) -> CircuitInputs:
    """
    Circuit inputs for a paid record under a disclosure policy.

    Raises:
        ReceiptNotAvailable: record not paid or missing nonce / payment_ref
        PaymentRefMismatch: stored payment_ref differs from the recomputed one
        ProofGenerationFailed: amount outside the policy's bounds
    """
    policy = policy or DisclosurePolicy()

    if record.status is not PaymentStatus.PAID:
        raise ReceiptNotAvailable(record.invoice_id, f"status is {record.status.value}")
    if not record.nonce or not record.payment_ref:
        raise ReceiptNotAvailable(record.invoice_id, "missing payment nonce or payment_ref")

    expected = generate_payment_ref(
        record.invoice_id, record.sender, record.recipient, record.amount, record.nonce
    )
    supplied = record.payment_ref.lower().removeprefix("0x")
    if supplied != expected:
        raise PaymentRefMismatch(expected, supplied)

    if not policy.admits(record.amount):
        raise ProofGenerationFailed(
            "receipt", "amount lies outside the disclosed bounds"
        )

    private = PrivateInputs(
        invoice_id=fixed_width(record.invoice_id, INVOICE_ID_FIELD_SIZE),
        sender=fixed_width(record.sender, IDENTITY_FIELD_SIZE),
        recipient=fixed_width(record.recipient, IDENTITY_FIELD_SIZE),
        amount=amount_field(record.amount),
        nonce=fixed_width(record.nonce, NONCE_FIELD_SIZE),
    )
    public = PublicInputs(
        payment_ref=payment_ref_bytes(expected),
        invoice_id=private.invoice_id if policy.reveal_invoice_id else bytes(INVOICE_ID_FIELD_SIZE),
        recipient=private.recipient if policy.reveal_recipient else bytes(IDENTITY_FIELD_SIZE),
        min_amount=policy.min_amount or 0,
        max_amount=policy.max_amount or 0,
        enforce_min=policy.min_amount is not None,
        enforce_max=policy.max_amount is not None,
    )
    logger.debug(
        f"Receipt inputs for {record.invoice_id}: "
        f"reveal_invoice_id={policy.reveal_invoice_id} reveal_recipient={policy.reveal_recipient}"
    )
    return CircuitInputs(private, public)
