"""
Veil Confidential Transfer Orchestrator

Moves value between the public and confidential sides of a token account
and between confidential accounts.

STATE MACHINE (per account):
    UNINITIALIZED -> CONFIGURED -> {DEPOSITED <-> APPLIED} -> TRANSFER_IN_FLIGHT -> SETTLED

Each edge is one transaction or a short sequence of them. Edges are not
atomic with respect to each other. After a crash the state is re-derived
from the ledger with current_state() and the caller resumes from the
matching edge; nothing is rolled back.

Every edge re-reads the account right before building its instructions.
There is no locking against other writers: a stale build is detected only
when the ledger rejects it.

PROOF PLACEMENT:
    configure   pubkey validity, inline (offset -1)
    withdraw    equality + range U64 [64], context accounts
    transfer    validity + equality + range U128 [64, 16, 32, 16], context accounts
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from veil.config import VeilConfig
from veil.constants import (
    BALANCE_BITS,
    EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT,
    IDENTITY_POINT,
    TRANSFER_AMOUNT_LO_BITS,
    TRANSFER_AMOUNT_HI_BITS,
    TRANSFER_AMOUNT_MAX_BITS,
)
from veil.crypto.ciphertext import Ciphertext, combine_lo_hi
from veil.crypto.elgamal import (
    ElGamalPubkey,
    PedersenOpening,
    encrypt_grouped_with,
    pedersen_commit,
)
from veil.errors import (
    AccountNotFound,
    ExtensionNotPresent,
    InsufficientBalance,
    InvalidParameterError,
    InvalidStateTransition,
    ProofGenerationFailed,
    ProofVerificationFailed,
    VeilError,
)
from veil.keys.derivation import DerivedKeys
from veil.proofs.context import ContextHandle, ProofContextLifecycle, ProofKind
from veil.proofs.equality import EqualityProofData
from veil.proofs.pubkey_validity import PubkeyValidityProofData
from veil.proofs.range import BatchedRangeProofU64, BatchedRangeProofU128, RangeProofData
from veil.proofs.validity import GroupedValidityProofData
from veil.protocol import instructions as ix
from veil.protocol.interfaces import Ledger, Signer
from veil.protocol.submission import Submitter
from veil.protocol.transaction import Instruction, Pubkey
from veil.state.balance import (
    BalanceRecord,
    ConfidentialTransferAccount,
    read_extension,
    read_public_balance,
)

logger = logging.getLogger(__name__)

# Range proof allocations
WITHDRAW_BIT_LENGTHS = (BALANCE_BITS,)
TRANSFER_BIT_LENGTHS = (
    BALANCE_BITS,
    TRANSFER_AMOUNT_LO_BITS,
    TRANSFER_AMOUNT_HI_BITS,
    128 - BALANCE_BITS - TRANSFER_AMOUNT_LO_BITS - TRANSFER_AMOUNT_HI_BITS,
)

# Auditor slot when the mint has no auditor: every handle is the identity
NO_AUDITOR = ElGamalPubkey(IDENTITY_POINT)


class AccountState(Enum):
    UNINITIALIZED = "uninitialized"
    CONFIGURED = "configured"
    DEPOSITED = "deposited"
    APPLIED = "applied"
    TRANSFER_IN_FLIGHT = "transfer_in_flight"
    SETTLED = "settled"


@dataclass
class StepResult:
    """Outcome of one state machine edge."""
    state: AccountState
    signatures: List[str] = field(default_factory=list)
    leaked_contexts: List[Pubkey] = field(default_factory=list)

    @property
    def submitted(self) -> bool:
        return bool(self.signatures)


@dataclass(frozen=True, slots=True)
class SplitAmount:
    """Transfer amount split into lo (16 bits) and hi (32 bits)."""
    lo: int
    hi: int

    @property
    def value(self) -> int:
        return self.lo + (self.hi << TRANSFER_AMOUNT_LO_BITS)


def split_amount(amount: int) -> SplitAmount:
    """
    Split a transfer amount at the lo/hi boundary.

    Raises InvalidParameterError unless 0 < amount < 2^48.
    """
    if amount <= 0:
        raise InvalidParameterError("amount", "must be positive")
    if amount >> TRANSFER_AMOUNT_MAX_BITS:
        raise InvalidParameterError(
            "amount", f"must fit in {TRANSFER_AMOUNT_MAX_BITS} bits"
        )
    return SplitAmount(
        lo=amount & ((1 << TRANSFER_AMOUNT_LO_BITS) - 1),
        hi=amount >> TRANSFER_AMOUNT_LO_BITS,
    )


def initialize_mint_instructions(
    mint: Pubkey,
    authority: Optional[Pubkey],
    auditor: Optional[ElGamalPubkey] = None,
    auto_approve: bool = True,
) -> List[Instruction]:
    """Confidential-transfer mint extension with an optional auditor."""
    return [ix.initialize_mint(mint, authority, auto_approve, auditor)]


def _self_verify(name: str, proof_data) -> None:
    # A proof that fails locally would only burn a transaction
    try:
        proof_data.verify()
    except ProofVerificationFailed as e:
        raise ProofGenerationFailed(name, e.message) from e


class TransferOrchestrator:
    """
    Drives one owner's confidential accounts through the state machine.

    Depends only on the Signer and Ledger capabilities, the owner's
    derived keys and the submission policy.
    """

    def __init__(
        self,
        ledger: Ledger,
        signer: Signer,
        keys: DerivedKeys,
        config: Optional[VeilConfig] = None,
        submitter: Optional[Submitter] = None,
    ):
        self.ledger = ledger
        self.signer = signer
        self.keys = keys
        self.config = config or VeilConfig()
        self.submitter = submitter or Submitter(ledger, signer, self.config.submission)
        self.owner: Pubkey = signer.identity
        self.contexts = ProofContextLifecycle(self.owner)
        self._in_flight: set = set()

    # ==========================================================================
    # STATE
    # ==========================================================================

    async def _read(self, account: Pubkey) -> bytes:
        data = await self.ledger.get_account_info(account)
        if not data:
            raise AccountNotFound(str(account))
        return data

    async def _read_confidential(
        self, account: Pubkey
    ) -> Tuple[bytes, ConfidentialTransferAccount, int]:
        """Account bytes, extension and decrypted available balance."""
        data = await self._read(account)
        extension = read_extension(data)
        available = self.keys.ae_key.decrypt(extension.decryptable_available_balance)
        return data, extension, available

    async def current_state(self, account: Pubkey) -> AccountState:
        """Re-derive the account's state from the ledger."""
        if account in self._in_flight:
            return AccountState.TRANSFER_IN_FLIGHT
        data = await self._read(account)
        try:
            extension = read_extension(data)
        except ExtensionNotPresent:
            return AccountState.UNINITIALIZED
        if extension.pending_balance_credit_counter > 0:
            return AccountState.DEPOSITED
        available = self.keys.ae_key.decrypt(extension.decryptable_available_balance)
        return AccountState.APPLIED if available else AccountState.CONFIGURED

    async def balance(self, account: Pubkey) -> BalanceRecord:
        data, _, available = await self._read_confidential(account)
        return BalanceRecord(public=read_public_balance(data), pending=0, available=available)

    async def _require_configured(self, account: Pubkey, operation: str):
        try:
            return await self._read_confidential(account)
        except ExtensionNotPresent as e:
            raise InvalidStateTransition(AccountState.UNINITIALIZED.value, operation) from e

    # ==========================================================================
    # EDGES
    # ==========================================================================

    async def configure(self, account: Pubkey, mint: Pubkey) -> StepResult:
        """UNINITIALIZED -> CONFIGURED. A configured account is left as is."""
        state = await self.current_state(account)
        if state is not AccountState.UNINITIALIZED:
            logger.info(f"Account {account} already {state.value}, skipping configure")
            return StepResult(state)

        proof = PubkeyValidityProofData.create(self.keys.elgamal)
        _self_verify("pubkey_validity", proof)

        instructions = [
            ix.reallocate(account, self.owner, self.owner, [EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT]),
            ix.verify_proof(proof.PROOF_TYPE, proof.to_bytes()),
            ix.configure_account(
                account,
                mint,
                self.owner,
                self.keys.ae_key.encrypt(0),
                proof=-1,
                max_pending_credit_counter=self.config.token.max_pending_credit_counter,
            ),
        ]
        signature = await self.submitter.send(instructions, description="configure")
        return StepResult(AccountState.CONFIGURED, [signature])

    async def deposit(
        self,
        account: Pubkey,
        mint: Pubkey,
        amount: int,
        decimals: Optional[int] = None,
    ) -> StepResult:
        """Move public balance into pending. CONFIGURED/APPLIED -> DEPOSITED."""
        if amount <= 0:
            raise InvalidParameterError("amount", "must be positive")
        data, _, _ = await self._require_configured(account, "deposit")

        public = read_public_balance(data)
        if amount > public:
            raise InsufficientBalance(public, amount)

        decimals = self.config.token.decimals if decimals is None else decimals
        signature = await self.submitter.send(
            [ix.deposit(account, mint, self.owner, amount, decimals)],
            description=f"deposit {amount}",
        )
        return StepResult(AccountState.DEPOSITED, [signature])

    async def apply_pending(self, account: Pubkey, credited_amount: int) -> StepResult:
        """
        Merge pending into available. DEPOSITED -> APPLIED.

        credited_amount is the total credited to pending since the last
        apply; pending ciphertexts are never decrypted here.
        """
        if credited_amount < 0:
            raise InvalidParameterError("credited_amount", "cannot be negative")
        _, extension, available = await self._require_configured(account, "apply_pending")

        counter = extension.pending_balance_credit_counter
        if counter == 0:
            logger.info(f"Nothing pending on {account}")
            state = AccountState.APPLIED if available else AccountState.CONFIGURED
            return StepResult(state)

        new_balance = available + credited_amount
        signature = await self.submitter.send(
            [ix.apply_pending_balance(account, self.owner, counter, self.keys.ae_key.encrypt(new_balance))],
            description=f"apply pending ({counter} credits)",
        )
        return StepResult(AccountState.APPLIED, [signature])

    async def withdraw(
        self,
        account: Pubkey,
        mint: Pubkey,
        amount: int,
        decimals: Optional[int] = None,
    ) -> StepResult:
        """Move available balance back to the public side."""
        if amount <= 0:
            raise InvalidParameterError("amount", "must be positive")
        _, extension, available = await self._require_configured(account, "withdraw")
        if amount > available:
            raise InsufficientBalance(available, amount)

        new_balance = available - amount
        new_ciphertext = extension.available_balance.subtract_amount(amount)
        opening = PedersenOpening.generate()
        commitment = pedersen_commit(new_balance, opening)

        equality = EqualityProofData.create(
            self.keys.elgamal, new_ciphertext, new_balance, opening, commitment
        )
        _self_verify("equality", equality)
        range_proof = RangeProofData.create(
            BatchedRangeProofU64, [new_balance], WITHDRAW_BIT_LENGTHS, [opening]
        )
        _self_verify("range_u64", range_proof)

        decimals = self.config.token.decimals if decimals is None else decimals
        new_decryptable = self.keys.ae_key.encrypt(new_balance)

        def build(handles: Sequence[ContextHandle]) -> List[Instruction]:
            eq_handle, range_handle = handles
            return [ix.withdraw(
                account, mint, self.owner, amount, decimals, new_decryptable,
                eq_handle.address, range_handle.address,
            )]

        signatures, leaked = await self._run_with_contexts(
            [
                (ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY, equality),
                (ProofKind.BATCHED_RANGE_U64, range_proof),
            ],
            build,
            f"withdraw {amount}",
        )
        state = AccountState.APPLIED if new_balance else AccountState.CONFIGURED
        return StepResult(state, signatures, leaked)

    async def transfer(
        self,
        source: Pubkey,
        mint: Pubkey,
        destination: Pubkey,
        amount: int,
        destination_pubkey: Optional[ElGamalPubkey] = None,
        auditor_pubkey: Optional[ElGamalPubkey] = None,
    ) -> StepResult:
        """
        Confidential transfer from source to destination.

        The destination pubkey is read from the destination account when
        not given; the auditor defaults to the configured one, or none.
        """
        split = split_amount(amount)
        _, extension, available = await self._require_configured(source, "transfer")
        if amount > available:
            raise InsufficientBalance(available, amount)

        if destination_pubkey is None:
            destination_pubkey = read_extension(await self._read(destination)).elgamal_pubkey
        if auditor_pubkey is None:
            auditor_pubkey = self._configured_auditor()

        pubkeys = (self.keys.elgamal.public, destination_pubkey, auditor_pubkey)
        opening_lo = PedersenOpening.generate()
        opening_hi = PedersenOpening.generate()
        grouped_lo = encrypt_grouped_with(pubkeys, split.lo, opening_lo)
        grouped_hi = encrypt_grouped_with(pubkeys, split.hi, opening_hi)

        validity = GroupedValidityProofData.create(
            pubkeys, grouped_lo, grouped_hi, split.lo, split.hi, opening_lo, opening_hi
        )
        _self_verify("grouped_validity", validity)

        amount_ciphertext = Ciphertext.from_bytes(combine_lo_hi(
            grouped_lo.ciphertext(0), grouped_hi.ciphertext(0), TRANSFER_AMOUNT_LO_BITS
        ))
        new_ciphertext = extension.available_balance - amount_ciphertext
        new_balance = available - amount
        new_opening = PedersenOpening.generate()
        commitment = pedersen_commit(new_balance, new_opening)

        equality = EqualityProofData.create(
            self.keys.elgamal, new_ciphertext, new_balance, new_opening, commitment
        )
        _self_verify("equality", equality)

        range_proof = RangeProofData.create(
            BatchedRangeProofU128,
            [new_balance, split.lo, split.hi, 0],
            TRANSFER_BIT_LENGTHS,
            [new_opening, opening_lo, opening_hi, PedersenOpening.generate()],
        )
        _self_verify("range_u128", range_proof)

        new_decryptable = self.keys.ae_key.encrypt(new_balance)
        auditor_lo = grouped_lo.ciphertext(2).to_bytes()
        auditor_hi = grouped_hi.ciphertext(2).to_bytes()

        def build(handles: Sequence[ContextHandle]) -> List[Instruction]:
            validity_handle, eq_handle, range_handle = handles
            return [ix.transfer(
                source, mint, destination, self.owner,
                new_decryptable, auditor_lo, auditor_hi,
                eq_handle.address, validity_handle.address, range_handle.address,
            )]

        self._in_flight.add(source)
        try:
            signatures, leaked = await self._run_with_contexts(
                [
                    (ProofKind.BATCHED_GROUPED_3_HANDLES_VALIDITY, validity),
                    (ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY, equality),
                    (ProofKind.BATCHED_RANGE_U128, range_proof),
                ],
                build,
                f"transfer {amount}",
            )
        finally:
            self._in_flight.discard(source)

        return StepResult(AccountState.SETTLED, signatures, leaked)

    def _configured_auditor(self) -> ElGamalPubkey:
        if self.config.token.auditor_pubkey:
            return ElGamalPubkey.from_hex(self.config.token.auditor_pubkey)
        return NO_AUDITOR

    # ==========================================================================
    # PROOF CONTEXTS
    # ==========================================================================

    async def _run_with_contexts(
        self,
        proofs: Sequence[Tuple[ProofKind, object]],
        build: Callable[[Sequence[ContextHandle]], List[Instruction]],
        description: str,
    ) -> Tuple[List[str], List[Pubkey]]:
        """
        Create one context per proof, send the consuming instruction, close.

        Contexts are created in order, strictly before the consuming
        transaction. They are closed whether or not it lands; a failed
        close is logged and reported, never raised over the outcome.
        """
        signatures: List[str] = []
        created: List[ContextHandle] = []
        try:
            for kind, proof_data in proofs:
                handle = self.contexts.allocate(kind)
                try:
                    signatures.append(await self.submitter.send(
                        self.contexts.create_instructions(handle, proof_data),
                        [handle.keypair],
                        f"{description}: verify {kind.name.lower()}",
                    ))
                except VeilError:
                    if await self._context_exists(handle):
                        created.append(handle)
                    raise
                created.append(handle)

            signatures.append(await self.submitter.send(build(created), description=description))
        finally:
            leaked = await self._close(created, description)

        return signatures, leaked

    async def _context_exists(self, handle: ContextHandle) -> bool:
        """
        Whether a context whose create transaction raised is on the ledger.

        A create can land and still surface as an error (confirmation
        timeout, then "already in use" on the retry). An absent one is
        discarded; one that cannot be checked stays outstanding for
        close_outstanding().
        """
        try:
            exists = await self.ledger.get_account_info(handle.address) is not None
        except VeilError as e:
            logger.warning(f"Cannot check context {handle.address} ({e.message}), keeping it outstanding")
            return False
        if not exists:
            self.contexts.discard(handle)
        return exists

    async def _close(self, handles: List[ContextHandle], description: str) -> List[Pubkey]:
        if not handles:
            return []
        closes = [self.contexts.close(handle) for handle in handles]
        try:
            await self.submitter.send(closes, description=f"{description}: close contexts")
        except VeilError as e:
            for handle in handles:
                self.contexts.reopen(handle)
            addresses = [handle.address for handle in handles]
            logger.warning(
                f"{description}: failed to close {len(handles)} contexts ({e.message}), "
                f"rent stays locked in {', '.join(str(a) for a in addresses)}"
            )
            return addresses
        return []

    async def close_outstanding(self) -> List[Pubkey]:
        """Retry closing contexts left open by an earlier failure."""
        handles = self.contexts.outstanding()
        return await self._close(handles, "recovery")
