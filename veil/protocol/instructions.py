"""
Veil Instruction Encoding

Token program confidential-transfer instructions, proof program verify /
close instructions, and system account creation.

All integers are LITTLE-ENDIAN. Confidential-transfer instructions carry
the extension prefix byte (27) followed by a sub-instruction byte.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from veil.constants import (
    AE_CIPHERTEXT_SIZE,
    CIPHERTEXT_SIZE,
    ELGAMAL_PUBKEY_SIZE,
    TOKEN_2022_PROGRAM_ID,
    ZK_ELGAMAL_PROOF_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    INSTRUCTIONS_SYSVAR_ID,
    TOKEN_IX_CONFIDENTIAL_TRANSFER_EXTENSION,
    TOKEN_IX_REALLOCATE,
    CT_IX_INITIALIZE_MINT,
    CT_IX_CONFIGURE_ACCOUNT,
    CT_IX_DEPOSIT,
    CT_IX_WITHDRAW,
    CT_IX_TRANSFER,
    CT_IX_APPLY_PENDING_BALANCE,
    SYSTEM_IX_CREATE_ACCOUNT,
    PROOF_IX_CLOSE_CONTEXT_STATE,
    DEFAULT_MAX_PENDING_CREDIT_COUNTER,
    ACCOUNT_STORAGE_OVERHEAD,
    LAMPORTS_PER_BYTE_YEAR,
    RENT_EXEMPTION_YEARS,
)
from veil.crypto.elgamal import ElGamalPubkey
from veil.errors import InvalidParameterError
from veil.protocol.transaction import AccountMeta, Instruction, Pubkey

TOKEN_PROGRAM = Pubkey.from_string(TOKEN_2022_PROGRAM_ID)
ZK_PROOF_PROGRAM = Pubkey.from_string(ZK_ELGAMAL_PROOF_PROGRAM_ID)
SYSTEM_PROGRAM = Pubkey.from_string(SYSTEM_PROGRAM_ID)
INSTRUCTIONS_SYSVAR = Pubkey.from_string(INSTRUCTIONS_SYSVAR_ID)

# Where a token instruction finds its proof: an offset to a verify
# instruction in the same transaction, or a context state account.
ProofLocation = Union[int, Pubkey]


def _ct_prefix(sub: int) -> bytes:
    return bytes([TOKEN_IX_CONFIDENTIAL_TRANSFER_EXTENSION, sub])


def _check_len(name: str, value: bytes, size: int) -> bytes:
    if len(value) != size:
        raise InvalidParameterError(name, f"must be {size} bytes, got {len(value)}")
    return bytes(value)


def _proof_accounts(locations: Sequence[ProofLocation]):
    """Account metas and i8 offsets for a list of proof locations."""
    metas = []
    offsets = []
    if any(isinstance(loc, int) for loc in locations):
        metas.append(AccountMeta(INSTRUCTIONS_SYSVAR))
    for loc in locations:
        if isinstance(loc, Pubkey):
            metas.append(AccountMeta(loc))
            offsets.append(0)
        else:
            offsets.append(loc)
    return metas, offsets


def rent_exempt_lamports(size: int) -> int:
    return (ACCOUNT_STORAGE_OVERHEAD + size) * LAMPORTS_PER_BYTE_YEAR * RENT_EXEMPTION_YEARS


# ==============================================================================
# TOKEN PROGRAM
# ==============================================================================

def initialize_mint(
    mint: Pubkey,
    authority: Optional[Pubkey],
    auto_approve: bool,
    auditor: Optional[ElGamalPubkey]
) -> Instruction:
    """Data: 27 | 0 | authority(32) | auto_approve(u8) | auditor(32), 67 bytes."""
    data = (
        _ct_prefix(CT_IX_INITIALIZE_MINT)
        + (authority.data if authority else bytes(32))
        + bytes([1 if auto_approve else 0])
        + (bytes(auditor) if auditor else bytes(ELGAMAL_PUBKEY_SIZE))
    )
    return Instruction(TOKEN_PROGRAM, (AccountMeta(mint, False, True),), data)


def reallocate(
    account: Pubkey,
    payer: Pubkey,
    owner: Pubkey,
    extension_types: Sequence[int]
) -> Instruction:
    data = bytes([TOKEN_IX_REALLOCATE]) + b"".join(struct.pack("<H", t) for t in extension_types)
    return Instruction(TOKEN_PROGRAM, (
        AccountMeta(account, False, True),
        AccountMeta(payer, True, True),
        AccountMeta(SYSTEM_PROGRAM),
        AccountMeta(owner, True, False),
    ), data)


def configure_account(
    account: Pubkey,
    mint: Pubkey,
    owner: Pubkey,
    decryptable_zero_balance: bytes,
    proof: ProofLocation = -1,
    max_pending_credit_counter: int = DEFAULT_MAX_PENDING_CREDIT_COUNTER,
) -> Instruction:
    """Data: 27 | 2 | decryptable_zero(36) | max_pending(u64) | proof_offset(i8)."""
    metas, offsets = _proof_accounts([proof])
    data = (
        _ct_prefix(CT_IX_CONFIGURE_ACCOUNT)
        + _check_len("decryptable_zero_balance", decryptable_zero_balance, AE_CIPHERTEXT_SIZE)
        + struct.pack("<Qb", max_pending_credit_counter, offsets[0])
    )
    return Instruction(TOKEN_PROGRAM, (
        AccountMeta(account, False, True),
        AccountMeta(mint),
        *metas,
        AccountMeta(owner, True, False),
    ), data)


def deposit(
    account: Pubkey,
    mint: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int
) -> Instruction:
    """Data: 27 | 5 | amount(u64) | decimals(u8)."""
    data = _ct_prefix(CT_IX_DEPOSIT) + struct.pack("<QB", amount, decimals)
    return Instruction(TOKEN_PROGRAM, (
        AccountMeta(account, False, True),
        AccountMeta(mint),
        AccountMeta(owner, True, False),
    ), data)


def withdraw(
    account: Pubkey,
    mint: Pubkey,
    owner: Pubkey,
    amount: int,
    decimals: int,
    new_decryptable_balance: bytes,
    equality_proof: ProofLocation,
    range_proof: ProofLocation,
) -> Instruction:
    """Data: 27 | 6 | amount(u64) | decimals(u8) | new_decryptable(36) | eq(i8) | range(i8)."""
    metas, offsets = _proof_accounts([equality_proof, range_proof])
    data = (
        _ct_prefix(CT_IX_WITHDRAW)
        + struct.pack("<QB", amount, decimals)
        + _check_len("new_decryptable_balance", new_decryptable_balance, AE_CIPHERTEXT_SIZE)
        + struct.pack("<bb", *offsets)
    )
    return Instruction(TOKEN_PROGRAM, (
        AccountMeta(account, False, True),
        AccountMeta(mint),
        *metas,
        AccountMeta(owner, True, False),
    ), data)


def transfer(
    source: Pubkey,
    mint: Pubkey,
    destination: Pubkey,
    owner: Pubkey,
    new_decryptable_balance: bytes,
    auditor_ciphertext_lo: bytes,
    auditor_ciphertext_hi: bytes,
    equality_proof: ProofLocation,
    validity_proof: ProofLocation,
    range_proof: ProofLocation,
) -> Instruction:
    """
    Data (169 bytes):
        27 | 7 | new_decryptable(36) | auditor_lo(64) | auditor_hi(64)
        | equality(i8) | validity(i8) | range(i8)
    """
    metas, offsets = _proof_accounts([equality_proof, validity_proof, range_proof])
    data = (
        _ct_prefix(CT_IX_TRANSFER)
        + _check_len("new_decryptable_balance", new_decryptable_balance, AE_CIPHERTEXT_SIZE)
        + _check_len("auditor_ciphertext_lo", auditor_ciphertext_lo, CIPHERTEXT_SIZE)
        + _check_len("auditor_ciphertext_hi", auditor_ciphertext_hi, CIPHERTEXT_SIZE)
        + struct.pack("<bbb", *offsets)
    )
    return Instruction(TOKEN_PROGRAM, (
        AccountMeta(source, False, True),
        AccountMeta(mint),
        AccountMeta(destination, False, True),
        *metas,
        AccountMeta(owner, True, False),
    ), data)


def apply_pending_balance(
    account: Pubkey,
    owner: Pubkey,
    expected_pending_credit_counter: int,
    new_decryptable_balance: bytes
) -> Instruction:
    """Data: 27 | 8 | expected_counter(u64) | new_decryptable(36)."""
    data = (
        _ct_prefix(CT_IX_APPLY_PENDING_BALANCE)
        + struct.pack("<Q", expected_pending_credit_counter)
        + _check_len("new_decryptable_balance", new_decryptable_balance, AE_CIPHERTEXT_SIZE)
    )
    return Instruction(TOKEN_PROGRAM, (
        AccountMeta(account, False, True),
        AccountMeta(owner, True, False),
    ), data)


# ==============================================================================
# PROOF PROGRAM
# ==============================================================================

def verify_proof(
    proof_type: int,
    proof_data: bytes,
    context_account: Optional[Pubkey] = None,
    context_authority: Optional[Pubkey] = None,
) -> Instruction:
    """Verify proof_data; with a context account the verified context is stored there."""
    accounts = ()
    if context_account is not None:
        if context_authority is None:
            raise InvalidParameterError("context_authority", "required with a context account")
        accounts = (
            AccountMeta(context_account, False, True),
            AccountMeta(context_authority),
        )
    return Instruction(ZK_PROOF_PROGRAM, accounts, bytes([proof_type]) + proof_data)


def close_context_state(
    context_account: Pubkey,
    destination: Pubkey,
    authority: Pubkey
) -> Instruction:
    return Instruction(ZK_PROOF_PROGRAM, (
        AccountMeta(context_account, False, True),
        AccountMeta(destination, False, True),
        AccountMeta(authority, True, False),
    ), bytes([PROOF_IX_CLOSE_CONTEXT_STATE]))


# ==============================================================================
# SYSTEM PROGRAM
# ==============================================================================

def create_account(
    payer: Pubkey,
    new_account: Pubkey,
    lamports: int,
    space: int,
    owner: Pubkey
) -> Instruction:
    """Data: index(u32) | lamports(u64) | space(u64) | owner(32)."""
    data = struct.pack("<IQQ", SYSTEM_IX_CREATE_ACCOUNT, lamports, space) + owner.data
    return Instruction(SYSTEM_PROGRAM, (
        AccountMeta(payer, True, True),
        AccountMeta(new_account, True, True),
    ), data)


# ==============================================================================
# DECODING
# ==============================================================================

@dataclass(frozen=True)
class DecodedTokenInstruction:
    """Fields of a confidential-transfer instruction (for inspection and tests)."""
    sub: int
    amount: Optional[int] = None
    decimals: Optional[int] = None
    new_decryptable_balance: Optional[bytes] = None
    expected_pending_credit_counter: Optional[int] = None
    max_pending_credit_counter: Optional[int] = None
    auditor_ciphertext_lo: Optional[bytes] = None
    auditor_ciphertext_hi: Optional[bytes] = None
    proof_offsets: tuple = ()
    authority: Optional[bytes] = None
    auto_approve: Optional[bool] = None
    auditor_pubkey: Optional[bytes] = None


def decode_token_instruction(data: bytes) -> DecodedTokenInstruction:
    if len(data) < 2 or data[0] != TOKEN_IX_CONFIDENTIAL_TRANSFER_EXTENSION:
        raise InvalidParameterError("data", "not a confidential-transfer instruction")
    sub, body = data[1], data[2:]

    if sub == CT_IX_INITIALIZE_MINT:
        return DecodedTokenInstruction(
            sub, authority=body[:32], auto_approve=bool(body[32]), auditor_pubkey=body[33:65]
        )
    if sub == CT_IX_CONFIGURE_ACCOUNT:
        max_pending, offset = struct.unpack_from("<Qb", body, 36)
        return DecodedTokenInstruction(
            sub, new_decryptable_balance=body[:36],
            max_pending_credit_counter=max_pending, proof_offsets=(offset,)
        )
    if sub == CT_IX_DEPOSIT:
        amount, decimals = struct.unpack_from("<QB", body)
        return DecodedTokenInstruction(sub, amount=amount, decimals=decimals)
    if sub == CT_IX_WITHDRAW:
        amount, decimals = struct.unpack_from("<QB", body)
        return DecodedTokenInstruction(
            sub, amount=amount, decimals=decimals,
            new_decryptable_balance=body[9:45],
            proof_offsets=struct.unpack_from("<bb", body, 45),
        )
    if sub == CT_IX_TRANSFER:
        return DecodedTokenInstruction(
            sub,
            new_decryptable_balance=body[:36],
            auditor_ciphertext_lo=body[36:100],
            auditor_ciphertext_hi=body[100:164],
            proof_offsets=struct.unpack_from("<bbb", body, 164),
        )
    if sub == CT_IX_APPLY_PENDING_BALANCE:
        (counter,) = struct.unpack_from("<Q", body)
        return DecodedTokenInstruction(
            sub, expected_pending_credit_counter=counter, new_decryptable_balance=body[8:44]
        )
    raise InvalidParameterError("data", f"unknown confidential-transfer instruction {sub}")
