"""
Veil Payment Reference

    payment_ref = SHA-256(invoice_id[36] || sender[44] || recipient[44]
                          || amount[20] || nonce[64])

Every field is UTF-8, truncated or zero-padded to its width. The amount
is its decimal ASCII form. The same 208-byte preimage is the private
witness of the receipt circuit.
"""

import hashlib
import secrets

from veil.constants import (
    INVOICE_ID_FIELD_SIZE,
    IDENTITY_FIELD_SIZE,
    AMOUNT_FIELD_SIZE,
    NONCE_FIELD_SIZE,
    PAYMENT_REF_SIZE,
)
from veil.errors import InvalidParameterError

PREIMAGE_SIZE = (
    INVOICE_ID_FIELD_SIZE + 2 * IDENTITY_FIELD_SIZE + AMOUNT_FIELD_SIZE + NONCE_FIELD_SIZE
)


def fixed_width(value: str, size: int) -> bytes:
    """UTF-8 bytes of value, truncated or zero-padded to size."""
    return value.encode("utf-8")[:size].ljust(size, b"\x00")


def amount_field(amount: int) -> bytes:
    if amount < 0:
        raise InvalidParameterError("amount", "cannot be negative")
    return fixed_width(str(amount), AMOUNT_FIELD_SIZE)


def payment_preimage(
    invoice_id: str,
    sender: str,
    recipient: str,
    amount: int,
    nonce: str
) -> bytes:
    return (
        fixed_width(invoice_id, INVOICE_ID_FIELD_SIZE)
        + fixed_width(sender, IDENTITY_FIELD_SIZE)
        + fixed_width(recipient, IDENTITY_FIELD_SIZE)
        + amount_field(amount)
        + fixed_width(nonce, NONCE_FIELD_SIZE)
    )


def generate_payment_ref(
    invoice_id: str,
    sender: str,
    recipient: str,
    amount: int,
    nonce: str
) -> str:
    """Hex SHA-256 of the payment preimage (64 characters)."""
    preimage = payment_preimage(invoice_id, sender, recipient, amount, nonce)
    return hashlib.sha256(preimage).hexdigest()


def generate_nonce() -> str:
    """Random payment nonce filling the 64-byte field exactly."""
    return secrets.token_hex(NONCE_FIELD_SIZE // 2)


def payment_ref_bytes(payment_ref: str) -> bytes:
    try:
        data = bytes.fromhex(payment_ref.removeprefix("0x"))
    except ValueError as e:
        raise InvalidParameterError("payment_ref", "must be hex") from e
    if len(data) != PAYMENT_REF_SIZE:
        raise InvalidParameterError("payment_ref", f"must be {PAYMENT_REF_SIZE} bytes")
    return data
