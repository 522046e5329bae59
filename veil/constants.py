"""
Veil Constants

Protocol constants for confidential balances, proof context accounts and
selective-disclosure receipts. Single source of truth for every byte offset
and size used on the wire.
"""

from typing import Final

# ==============================================================================
# GROUP / CURVE
# ==============================================================================

CURVE_ORDER: Final[int] = 2**252 + 27742317777372353535851937790883648493
POINT_SIZE: Final[int] = 32
SCALAR_SIZE: Final[int] = 32
COFACTOR: Final[int] = 8

# Compressed encoding of the neutral element (x=0, y=1)
IDENTITY_POINT: Final[bytes] = b"\x01" + bytes(31)

H_GENERATOR_SEED: Final[bytes] = b"Veil Pedersen H Generator v1"

DOMAIN_HASH_TO_POINT: Final[bytes] = b"Veil_HashToPoint_v1"
DOMAIN_TRANSCRIPT: Final[bytes] = b"Veil_Transcript_v1"

# ==============================================================================
# CIPHERTEXTS
# ==============================================================================

CIPHERTEXT_SIZE: Final[int] = 64                  # commitment || handle
GROUPED_CIPHERTEXT_3_HANDLES_SIZE: Final[int] = 128
COMMITMENT_SIZE: Final[int] = 32
ELGAMAL_PUBKEY_SIZE: Final[int] = 32

# lo/hi split of transfer amounts
TRANSFER_AMOUNT_LO_BITS: Final[int] = 16
TRANSFER_AMOUNT_HI_BITS: Final[int] = 32
TRANSFER_AMOUNT_MAX_BITS: Final[int] = TRANSFER_AMOUNT_LO_BITS + TRANSFER_AMOUNT_HI_BITS
BALANCE_BITS: Final[int] = 64

# ==============================================================================
# AUTHENTICATED ENCRYPTION (decryptable balance)
# ==============================================================================

AE_KEY_SIZE: Final[int] = 16
AE_NONCE_SIZE: Final[int] = 12
AE_TAG_SIZE: Final[int] = 16
AE_PLAINTEXT_SIZE: Final[int] = 8
AE_CIPHERTEXT_SIZE: Final[int] = AE_NONCE_SIZE + AE_PLAINTEXT_SIZE + AE_TAG_SIZE  # 36

# ==============================================================================
# KEY DERIVATION
# ==============================================================================

KEY_DERIVATION_MESSAGE: Final[bytes] = b"Veil ElGamal Key Derivation v1"
KEY_DERIVATION_MIN_HASH_SIZE: Final[int] = 48

# ==============================================================================
# TOKEN ACCOUNT LAYOUT
# ==============================================================================

TOKEN_ACCOUNT_BASE_SIZE: Final[int] = 165
TOKEN_ACCOUNT_AMOUNT_OFFSET: Final[int] = 64
ACCOUNT_TYPE_SIZE: Final[int] = 1
TLV_HEADER_SIZE: Final[int] = 4

EXTENSION_CONFIDENTIAL_TRANSFER_MINT: Final[int] = 4
EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT: Final[int] = 5

# Offsets inside the confidential transfer account extension payload
CT_APPROVED_OFFSET: Final[int] = 0
CT_ELGAMAL_PUBKEY_OFFSET: Final[int] = 1
CT_PENDING_LO_OFFSET: Final[int] = 33
CT_PENDING_HI_OFFSET: Final[int] = CT_PENDING_LO_OFFSET + CIPHERTEXT_SIZE          # 97
CT_AVAILABLE_OFFSET: Final[int] = CT_PENDING_HI_OFFSET + CIPHERTEXT_SIZE           # 161
CT_DECRYPTABLE_AVAILABLE_OFFSET: Final[int] = CT_AVAILABLE_OFFSET + CIPHERTEXT_SIZE  # 225
CT_ALLOW_CONFIDENTIAL_CREDITS_OFFSET: Final[int] = CT_DECRYPTABLE_AVAILABLE_OFFSET + AE_CIPHERTEXT_SIZE  # 261
CT_ALLOW_NON_CONFIDENTIAL_CREDITS_OFFSET: Final[int] = 262
CT_PENDING_CREDIT_COUNTER_OFFSET: Final[int] = 263
CT_MAX_PENDING_CREDIT_COUNTER_OFFSET: Final[int] = 271
CT_EXPECTED_PENDING_CREDIT_COUNTER_OFFSET: Final[int] = 279
CT_ACTUAL_PENDING_CREDIT_COUNTER_OFFSET: Final[int] = 287
CT_ACCOUNT_EXTENSION_SIZE: Final[int] = 295

DEFAULT_MAX_PENDING_CREDIT_COUNTER: Final[int] = 65536

# ==============================================================================
# PROGRAMS AND INSTRUCTIONS
# ==============================================================================

TOKEN_2022_PROGRAM_ID: Final[str] = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ZK_ELGAMAL_PROOF_PROGRAM_ID: Final[str] = "ZkE1Gama1Proof11111111111111111111111111111"
SYSTEM_PROGRAM_ID: Final[str] = "11111111111111111111111111111111"
INSTRUCTIONS_SYSVAR_ID: Final[str] = "Sysvar1nstructions1111111111111111111111111"

TOKEN_IX_CONFIDENTIAL_TRANSFER_EXTENSION: Final[int] = 27
TOKEN_IX_REALLOCATE: Final[int] = 29

CT_IX_INITIALIZE_MINT: Final[int] = 0
CT_IX_CONFIGURE_ACCOUNT: Final[int] = 2
CT_IX_DEPOSIT: Final[int] = 5
CT_IX_WITHDRAW: Final[int] = 6
CT_IX_TRANSFER: Final[int] = 7
CT_IX_APPLY_PENDING_BALANCE: Final[int] = 8

SYSTEM_IX_CREATE_ACCOUNT: Final[int] = 0

# Proof program instruction discriminators; context accounts store the same
# value as their proof type byte
PROOF_IX_CLOSE_CONTEXT_STATE: Final[int] = 0
PROOF_IX_CIPHERTEXT_COMMITMENT_EQUALITY: Final[int] = 3
PROOF_IX_PUBKEY_VALIDITY: Final[int] = 4
PROOF_IX_BATCHED_RANGE_PROOF_U64: Final[int] = 6
PROOF_IX_BATCHED_RANGE_PROOF_U128: Final[int] = 7
PROOF_IX_BATCHED_RANGE_PROOF_U256: Final[int] = 8
PROOF_IX_BATCHED_GROUPED_3_HANDLES_VALIDITY: Final[int] = 12

# ==============================================================================
# PROOF CONTEXT ACCOUNTS
# ==============================================================================

CONTEXT_AUTHORITY_SIZE: Final[int] = 32
CONTEXT_PROOF_TYPE_SIZE: Final[int] = 1
CONTEXT_HEADER_SIZE: Final[int] = CONTEXT_AUTHORITY_SIZE + CONTEXT_PROOF_TYPE_SIZE

PUBKEY_VALIDITY_CONTEXT_SIZE: Final[int] = 32
EQUALITY_CONTEXT_SIZE: Final[int] = 32 + 64 + 32                    # 128
GROUPED_3_HANDLES_VALIDITY_CONTEXT_SIZE: Final[int] = 32 * 3 + 128 * 2  # 352
RANGE_PROOF_MAX_COMMITMENTS: Final[int] = 8
RANGE_CONTEXT_SIZE: Final[int] = RANGE_PROOF_MAX_COMMITMENTS * 32 + RANGE_PROOF_MAX_COMMITMENTS  # 264

RANGE_U64_TOTAL_BITS: Final[int] = 64
RANGE_U128_TOTAL_BITS: Final[int] = 128
RANGE_U256_TOTAL_BITS: Final[int] = 256

# Rent-exemption: (account storage overhead + data) * lamports/byte-year * 2 years
ACCOUNT_STORAGE_OVERHEAD: Final[int] = 128
LAMPORTS_PER_BYTE_YEAR: Final[int] = 3480
RENT_EXEMPTION_YEARS: Final[int] = 2

# ==============================================================================
# SUBMISSION
# ==============================================================================

DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BACKOFF_SEC: Final[float] = 1.0
DEFAULT_CONFIRM_INTERVAL_SEC: Final[float] = 1.0
DEFAULT_CONFIRM_ATTEMPTS: Final[int] = 30

DEFAULT_DECIMALS: Final[int] = 9

# ==============================================================================
# RECEIPTS
# ==============================================================================

RECEIPT_TYPE: Final[str] = "zk-receipt"
RECEIPT_VERSION: Final[int] = 1

INVOICE_ID_FIELD_SIZE: Final[int] = 36
IDENTITY_FIELD_SIZE: Final[int] = 44
NONCE_FIELD_SIZE: Final[int] = 64
AMOUNT_FIELD_SIZE: Final[int] = 20     # decimal digits of a u64
PAYMENT_REF_SIZE: Final[int] = 32
