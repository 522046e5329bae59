"""
Veil Balance State

Decodes a token account into public / pending / available balances.

ACCOUNT LAYOUT:
    base record (165 bytes, amount u64 at offset 64)
    [account type (1 byte), present when the blob is longer than the base]
    TLV extensions: type(u16) || length(u16) || payload[length]

The confidential-transfer extension (type 5) payload is decoded with the
offsets in veil.constants. Only the decryptable available balance is
decrypted; pending balance is reported as zero because recovering it
needs a discrete log over the pending ElGamal ciphertexts, which is not
performed. Callers must not treat pending as authoritative.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

from veil.constants import (
    TOKEN_ACCOUNT_BASE_SIZE,
    TOKEN_ACCOUNT_AMOUNT_OFFSET,
    ACCOUNT_TYPE_SIZE,
    TLV_HEADER_SIZE,
    EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT,
    CIPHERTEXT_SIZE,
    AE_CIPHERTEXT_SIZE,
    ELGAMAL_PUBKEY_SIZE,
    CT_APPROVED_OFFSET,
    CT_ELGAMAL_PUBKEY_OFFSET,
    CT_PENDING_LO_OFFSET,
    CT_PENDING_HI_OFFSET,
    CT_AVAILABLE_OFFSET,
    CT_DECRYPTABLE_AVAILABLE_OFFSET,
    CT_ALLOW_CONFIDENTIAL_CREDITS_OFFSET,
    CT_ALLOW_NON_CONFIDENTIAL_CREDITS_OFFSET,
    CT_PENDING_CREDIT_COUNTER_OFFSET,
    CT_MAX_PENDING_CREDIT_COUNTER_OFFSET,
    CT_EXPECTED_PENDING_CREDIT_COUNTER_OFFSET,
    CT_ACTUAL_PENDING_CREDIT_COUNTER_OFFSET,
    CT_ACCOUNT_EXTENSION_SIZE,
)
from veil.crypto.authenticated import AeKey
from veil.crypto.ciphertext import Ciphertext
from veil.crypto.elgamal import ElGamalPubkey
from veil.errors import AccountNotFound, ExtensionNotPresent

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BalanceRecord:
    """Balances in base units. total is always public + pending + available."""
    public: int
    pending: int
    available: int

    @property
    def total(self) -> int:
        return self.public + self.pending + self.available

    def to_dict(self) -> dict:
        return {
            "public": self.public,
            "pending": self.pending,
            "available": self.available,
            "total": self.total,
        }


@dataclass(frozen=True)
class ConfidentialTransferAccount:
    """Decoded confidential-transfer account extension (295 bytes)."""
    approved: bool
    elgamal_pubkey: ElGamalPubkey
    pending_balance_lo: Ciphertext
    pending_balance_hi: Ciphertext
    available_balance: Ciphertext
    decryptable_available_balance: bytes
    allow_confidential_credits: bool
    allow_non_confidential_credits: bool
    pending_balance_credit_counter: int
    maximum_pending_balance_credit_counter: int
    expected_pending_balance_credit_counter: int
    actual_pending_balance_credit_counter: int

    @classmethod
    def from_bytes(cls, payload: bytes) -> ConfidentialTransferAccount:
        if len(payload) < CT_ACCOUNT_EXTENSION_SIZE:
            raise ExtensionNotPresent(
                EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT,
                f"Confidential transfer extension truncated: {len(payload)} bytes",
            )

        def ciphertext(offset: int) -> Ciphertext:
            return Ciphertext.from_bytes(payload[offset:offset + CIPHERTEXT_SIZE])

        def u64(offset: int) -> int:
            return struct.unpack_from("<Q", payload, offset)[0]

        return cls(
            approved=bool(payload[CT_APPROVED_OFFSET]),
            elgamal_pubkey=ElGamalPubkey(
                bytes(payload[CT_ELGAMAL_PUBKEY_OFFSET:CT_ELGAMAL_PUBKEY_OFFSET + ELGAMAL_PUBKEY_SIZE])
            ),
            pending_balance_lo=ciphertext(CT_PENDING_LO_OFFSET),
            pending_balance_hi=ciphertext(CT_PENDING_HI_OFFSET),
            available_balance=ciphertext(CT_AVAILABLE_OFFSET),
            decryptable_available_balance=bytes(
                payload[CT_DECRYPTABLE_AVAILABLE_OFFSET:
                        CT_DECRYPTABLE_AVAILABLE_OFFSET + AE_CIPHERTEXT_SIZE]
            ),
            allow_confidential_credits=bool(payload[CT_ALLOW_CONFIDENTIAL_CREDITS_OFFSET]),
            allow_non_confidential_credits=bool(payload[CT_ALLOW_NON_CONFIDENTIAL_CREDITS_OFFSET]),
            pending_balance_credit_counter=u64(CT_PENDING_CREDIT_COUNTER_OFFSET),
            maximum_pending_balance_credit_counter=u64(CT_MAX_PENDING_CREDIT_COUNTER_OFFSET),
            expected_pending_balance_credit_counter=u64(CT_EXPECTED_PENDING_CREDIT_COUNTER_OFFSET),
            actual_pending_balance_credit_counter=u64(CT_ACTUAL_PENDING_CREDIT_COUNTER_OFFSET),
        )

    def to_bytes(self) -> bytes:
        return (
            bytes([1 if self.approved else 0])
            + bytes(self.elgamal_pubkey)
            + bytes(self.pending_balance_lo)
            + bytes(self.pending_balance_hi)
            + bytes(self.available_balance)
            + self.decryptable_available_balance
            + bytes([1 if self.allow_confidential_credits else 0])
            + bytes([1 if self.allow_non_confidential_credits else 0])
            + struct.pack(
                "<QQQQ",
                self.pending_balance_credit_counter,
                self.maximum_pending_balance_credit_counter,
                self.expected_pending_balance_credit_counter,
                self.actual_pending_balance_credit_counter,
            )
        )


# ==============================================================================
# DECODING
# ==============================================================================

def read_public_balance(data: bytes) -> int:
    return struct.unpack_from("<Q", data, TOKEN_ACCOUNT_AMOUNT_OFFSET)[0]


def iter_extensions(data: bytes) -> Iterator[Tuple[int, bytes]]:
    """Yield (type, payload) for each TLV entry after the base record."""
    offset = TOKEN_ACCOUNT_BASE_SIZE
    if len(data) > TOKEN_ACCOUNT_BASE_SIZE:
        offset += ACCOUNT_TYPE_SIZE

    while offset + TLV_HEADER_SIZE <= len(data):
        ext_type, length = struct.unpack_from("<HH", data, offset)
        offset += TLV_HEADER_SIZE
        if ext_type == 0 and length == 0:
            # Uninitialized tail
            return
        yield ext_type, bytes(data[offset:offset + length])
        offset += length


def find_extension(data: bytes, ext_type: int) -> Optional[bytes]:
    for found, payload in iter_extensions(data):
        if found == ext_type:
            return payload
    return None


def read_extension(data: Optional[bytes]) -> ConfidentialTransferAccount:
    """
    Decode the confidential-transfer extension of an account.

    Raises:
        AccountNotFound: data is None or empty
        ExtensionNotPresent: no confidential-transfer extension
    """
    if not data:
        raise AccountNotFound()
    if len(data) < TOKEN_ACCOUNT_BASE_SIZE:
        raise ExtensionNotPresent(
            EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT,
            f"{len(data)}-byte blob is shorter than a token account",
        )
    payload = find_extension(data, EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT)
    if payload is None:
        raise ExtensionNotPresent(EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT)
    return ConfidentialTransferAccount.from_bytes(payload)


def decode(data: Optional[bytes], ae_key: AeKey) -> BalanceRecord:
    """
    Decode an account into its BalanceRecord.

    Raises:
        AccountNotFound: data is None or empty
        ExtensionNotPresent: not a confidential account
        DecryptionFailed: ae_key does not open the decryptable balance
    """
    extension = read_extension(data)
    public = read_public_balance(data)
    available = ae_key.decrypt(extension.decryptable_available_balance)
    return BalanceRecord(public=public, pending=0, available=available)
