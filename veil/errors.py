"""
Veil Error Handling

All error codes and exception classes. Every public operation either returns
a value or raises one of the typed errors below.
"""

from enum import IntEnum
from typing import Optional, Any


class ErrorCode(IntEnum):
    """Error codes, grouped by subsystem."""

    # 1xxx - General errors
    UNKNOWN_ERROR = 1000
    INVALID_PARAMETER = 1001
    CONFIG_ERROR = 1002

    # 2xxx - Ciphertext / group errors
    INVALID_CIPHERTEXT_LENGTH = 2001
    INVALID_POINT = 2002
    DECRYPTION_FAILED = 2003

    # 3xxx - Key derivation errors
    KEY_DERIVATION_FAILED = 3001
    SIGNER_UNAVAILABLE = 3002
    IDENTITY_NOT_CONNECTED = 3003

    # 4xxx - Account / balance errors
    ACCOUNT_NOT_FOUND = 4001
    EXTENSION_NOT_PRESENT = 4002
    INSUFFICIENT_BALANCE = 4003
    INVALID_STATE_TRANSITION = 4004

    # 5xxx - Proof errors
    INVALID_RANGE_SPLIT = 5001
    PROOF_VERIFICATION_FAILED = 5002
    PROOF_GENERATION_FAILED = 5003
    PROVER_NOT_INITIALIZED = 5004
    INVALID_PROOF_CONTEXT = 5005

    # 6xxx - Submission errors
    BLOCKHASH_EXPIRED = 6001
    CONFIRMATION_TIMEOUT = 6002
    TRANSACTION_FAILED = 6003
    LEDGER_UNAVAILABLE = 6004

    # 7xxx - Receipt errors
    PAYMENT_REF_MISMATCH = 7001
    RECEIPT_NOT_AVAILABLE = 7002
    INVALID_RECEIPT = 7003


class VeilError(Exception):
    """Base exception for all Veil errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Any] = None
    ):
        self.code = code
        self.message = message
        self.details = details
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dict."""
        result = {
            "code": self.code.value,
            "name": self.code.name,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result


# ==============================================================================
# General Errors (1xxx)
# ==============================================================================

class InvalidParameterError(VeilError):
    def __init__(self, param: str, message: str = ""):
        msg = f"Invalid parameter: {param}"
        if message:
            msg += f" - {message}"
        super().__init__(ErrorCode.INVALID_PARAMETER, msg, {"parameter": param})


class ConfigError(VeilError):
    def __init__(self, errors: list):
        super().__init__(
            ErrorCode.CONFIG_ERROR,
            f"Invalid configuration: {'; '.join(errors)}",
            {"errors": list(errors)}
        )


# ==============================================================================
# Ciphertext Errors (2xxx)
# ==============================================================================

class InvalidCiphertextLength(VeilError):
    def __init__(self, expected: int, actual: int):
        super().__init__(
            ErrorCode.INVALID_CIPHERTEXT_LENGTH,
            f"Ciphertext must be {expected} bytes, got {actual}",
            {"expected": expected, "actual": actual}
        )


class InvalidPoint(VeilError):
    def __init__(self, message: str = "Invalid group element"):
        super().__init__(ErrorCode.INVALID_POINT, message)


class DecryptionFailed(VeilError):
    def __init__(self, message: str = "Decryption failed"):
        super().__init__(ErrorCode.DECRYPTION_FAILED, message)


# ==============================================================================
# Key Derivation Errors (3xxx)
# ==============================================================================

class KeyDerivationFailed(VeilError):
    def __init__(
        self,
        message: str = "Key derivation failed",
        code: ErrorCode = ErrorCode.KEY_DERIVATION_FAILED,
        details: Any = None
    ):
        super().__init__(code, message, details)


class SignerUnavailable(KeyDerivationFailed):
    def __init__(self, message: str = "Signer does not support message signing"):
        super().__init__(message, ErrorCode.SIGNER_UNAVAILABLE)


class IdentityNotConnected(KeyDerivationFailed):
    def __init__(self, message: str = "No identity connected"):
        super().__init__(message, ErrorCode.IDENTITY_NOT_CONNECTED)


# ==============================================================================
# Account Errors (4xxx)
# ==============================================================================

class AccountNotFound(VeilError):
    def __init__(self, address: Optional[str] = None):
        msg = "Account not found"
        if address:
            msg += f": {address}"
        super().__init__(ErrorCode.ACCOUNT_NOT_FOUND, msg, {"address": address})


class ExtensionNotPresent(VeilError):
    def __init__(self, extension_type: int, message: str = ""):
        msg = message or f"Extension {extension_type} not present, not a confidential account"
        super().__init__(
            ErrorCode.EXTENSION_NOT_PRESENT,
            msg,
            {"extension_type": extension_type}
        )


class InsufficientBalance(VeilError):
    def __init__(self, available: int, required: int):
        super().__init__(
            ErrorCode.INSUFFICIENT_BALANCE,
            f"Insufficient balance: have {available}, need {required}",
            {"available": available, "required": required}
        )


class InvalidStateTransition(VeilError):
    def __init__(self, current: str, operation: str):
        super().__init__(
            ErrorCode.INVALID_STATE_TRANSITION,
            f"Cannot {operation} from state {current}",
            {"state": current, "operation": operation}
        )


# ==============================================================================
# Proof Errors (5xxx)
# ==============================================================================

class InvalidRangeSplit(VeilError):
    def __init__(self, message: str, bit_lengths: Optional[list] = None):
        super().__init__(
            ErrorCode.INVALID_RANGE_SPLIT,
            message,
            {"bit_lengths": bit_lengths} if bit_lengths is not None else None
        )


class ProofVerificationFailed(VeilError):
    def __init__(self, proof: str, reason: str = ""):
        msg = f"{proof} proof verification failed"
        if reason:
            msg += f": {reason}"
        super().__init__(ErrorCode.PROOF_VERIFICATION_FAILED, msg, {"proof": proof})


class ProofGenerationFailed(VeilError):
    def __init__(self, proof: str, reason: str = ""):
        msg = f"{proof} proof generation failed"
        if reason:
            msg += f": {reason}"
        super().__init__(ErrorCode.PROOF_GENERATION_FAILED, msg, {"proof": proof})


class ProverNotInitialized(VeilError):
    def __init__(self):
        super().__init__(
            ErrorCode.PROVER_NOT_INITIALIZED,
            "Prover backend is not open; call open() first"
        )


class InvalidProofContext(VeilError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_PROOF_CONTEXT, message)


# ==============================================================================
# Submission Errors (6xxx)
# ==============================================================================

class BlockhashExpired(VeilError):
    def __init__(self, message: str = "Block reference expired"):
        super().__init__(ErrorCode.BLOCKHASH_EXPIRED, message)


class TransactionConfirmationTimeout(VeilError):
    def __init__(self, signature: str, attempts: int):
        super().__init__(
            ErrorCode.CONFIRMATION_TIMEOUT,
            f"Transaction {signature} not confirmed after {attempts} polls",
            {"signature": signature, "attempts": attempts}
        )


class TransactionFailed(VeilError):
    def __init__(self, signature: Optional[str], reason: Any):
        super().__init__(
            ErrorCode.TRANSACTION_FAILED,
            f"Transaction failed: {reason}",
            {"signature": signature, "reason": str(reason)}
        )


class LedgerUnavailable(VeilError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.LEDGER_UNAVAILABLE, message)


# ==============================================================================
# Receipt Errors (7xxx)
# ==============================================================================

class PaymentRefMismatch(VeilError):
    def __init__(self, expected: str, actual: str):
        super().__init__(
            ErrorCode.PAYMENT_REF_MISMATCH,
            "Payment reference does not match payment fields",
            {"expected": expected, "actual": actual}
        )


class ReceiptNotAvailable(VeilError):
    def __init__(self, invoice_id: str, reason: str):
        super().__init__(
            ErrorCode.RECEIPT_NOT_AVAILABLE,
            f"Cannot issue receipt for {invoice_id}: {reason}",
            {"invoice_id": invoice_id}
        )


class InvalidReceipt(VeilError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.INVALID_RECEIPT, message)


# Errors that the submission policy treats as transient
RETRYABLE_ERRORS = (BlockhashExpired, TransactionConfirmationTimeout)
