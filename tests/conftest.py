"""
Veil Test Fixtures

SimulatedLedger executes the system, proof and confidential-transfer
instructions of submitted transactions against in-memory account blobs,
verifying every proof the way the ledger would.
"""

import dataclasses
import hashlib
import hmac
import secrets
import struct
from typing import Dict, List, Optional

import base58
import pytest

from veil.config import SubmissionConfig, VeilConfig
from veil.constants import (
    CT_ACCOUNT_EXTENSION_SIZE,
    EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT,
    PROOF_IX_CLOSE_CONTEXT_STATE,
    TOKEN_ACCOUNT_BASE_SIZE,
    TOKEN_IX_CONFIDENTIAL_TRANSFER_EXTENSION,
    TOKEN_IX_REALLOCATE,
    TRANSFER_AMOUNT_LO_BITS,
    CT_IX_CONFIGURE_ACCOUNT,
    CT_IX_DEPOSIT,
    CT_IX_WITHDRAW,
    CT_IX_TRANSFER,
    CT_IX_APPLY_PENDING_BALANCE,
)
from veil.crypto.authenticated import AeKey
from veil.crypto.ciphertext import Ciphertext, combine_lo_hi
from veil.crypto.elgamal import ElGamalKeypair
from veil.errors import BlockhashExpired, TransactionFailed, VeilError
from veil.proofs.context import ProofContextState, ProofKind
from veil.proofs.equality import EqualityContext, EqualityProofData
from veil.proofs.pubkey_validity import PubkeyValidityProofData
from veil.proofs.range import RangeProofContext, RangeProofData
from veil.proofs.validity import GroupedValidityContext, GroupedValidityProofData
from veil.protocol import instructions as ix
from veil.protocol.transaction import BlockReference, Keypair, Pubkey, Transaction
from veil.receipts.disclosure import CircuitInputs, PublicInputs
from veil.state.balance import ConfidentialTransferAccount, iter_extensions


# ==============================================================================
# ACCOUNT BLOBS
# ==============================================================================

ACCOUNT_TYPE_TOKEN = 2
STATE_INITIALIZED = 1


def make_token_account(mint: Pubkey, owner: Pubkey, amount: int) -> bytes:
    """165-byte base token account: mint || owner || amount || ... || state."""
    base = bytearray(TOKEN_ACCOUNT_BASE_SIZE)
    base[0:32] = mint.data
    base[32:64] = owner.data
    struct.pack_into("<Q", base, 64, amount)
    base[108] = STATE_INITIALIZED
    return bytes(base)


def with_extension(base: bytes, ext_type: int, payload: bytes) -> bytes:
    """Append an account-type byte and one TLV entry to a base record."""
    return (
        base[:TOKEN_ACCOUNT_BASE_SIZE]
        + bytes([ACCOUNT_TYPE_TOKEN])
        + struct.pack("<HH", ext_type, len(payload))
        + payload
    )


def extension_offset(data: bytes, ext_type: int) -> int:
    offset = TOKEN_ACCOUNT_BASE_SIZE + 1
    while offset + 4 <= len(data):
        found, length = struct.unpack_from("<HH", data, offset)
        if found == ext_type:
            return offset + 4
        offset += 4 + length
    raise KeyError(ext_type)


def replace_extension(data: bytes, ext: ConfidentialTransferAccount) -> bytes:
    start = extension_offset(data, EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT)
    payload = ext.to_bytes()
    return data[:start] + payload + data[start + len(payload):]


def account_owner(data: bytes) -> Pubkey:
    return Pubkey(data[32:64])


def account_amount(data: bytes) -> int:
    return struct.unpack_from("<Q", data, 64)[0]


def set_account_amount(data: bytes, amount: int) -> bytes:
    out = bytearray(data)
    struct.pack_into("<Q", out, 64, amount)
    return bytes(out)


# ==============================================================================
# SIGNER
# ==============================================================================

class FakeSigner:
    """Wallet double backed by a local ed25519 keypair."""

    def __init__(self, seed: bytes):
        self.keypair = Keypair.from_seed(seed)
        self.message_requests = 0

    @property
    def identity(self) -> Pubkey:
        return self.keypair.pubkey

    async def sign_message(self, message: bytes) -> bytes:
        self.message_requests += 1
        return self.keypair.sign(message)

    async def sign_transaction(self, transaction: Transaction) -> Transaction:
        transaction.sign(self.keypair)
        return transaction


# ==============================================================================
# SIMULATED LEDGER
# ==============================================================================

def _decode_proof(proof_type: int, payload: bytes):
    if proof_type == ProofKind.PUBKEY_VALIDITY.proof_type:
        return PubkeyValidityProofData.from_bytes(payload)
    if proof_type == ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY.proof_type:
        return EqualityProofData.from_bytes(payload)
    if proof_type == ProofKind.BATCHED_GROUPED_3_HANDLES_VALIDITY.proof_type:
        return GroupedValidityProofData.from_bytes(payload)
    return RangeProofData.from_bytes(payload, proof_type)


class Rejected(Exception):
    """Instruction failure inside the simulated runtime."""


class SimulatedLedger:
    """
    In-memory ledger implementing the Ledger capability.

    Transactions execute atomically on submit; a failing instruction
    rejects the whole transaction with TransactionFailed.
    """

    def __init__(self):
        self.accounts: Dict[Pubkey, bytes] = {}
        self.owners: Dict[Pubkey, Pubkey] = {}
        self.lamports: Dict[Pubkey, int] = {}
        self.confirmed: Dict[str, Transaction] = {}
        self.submitted: List[Transaction] = []
        self.block_requests = 0
        self.expire_next = 0
        self._valid_blockhashes = set()

    # --- setup ---------------------------------------------------------------

    def add_token_account(self, address: Pubkey, mint: Pubkey, owner: Pubkey, amount: int) -> None:
        self.accounts[address] = make_token_account(mint, owner, amount)
        self.owners[address] = ix.TOKEN_PROGRAM

    def extension(self, address: Pubkey) -> ConfidentialTransferAccount:
        for ext_type, payload in iter_extensions(self.accounts[address]):
            if ext_type == EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT:
                return ConfidentialTransferAccount.from_bytes(payload)
        raise KeyError(address)

    def context_accounts(self) -> List[Pubkey]:
        return [a for a, owner in self.owners.items() if owner == ix.ZK_PROOF_PROGRAM]

    # --- Ledger capability ---------------------------------------------------

    async def get_account_info(self, address: Pubkey) -> Optional[bytes]:
        return self.accounts.get(address)

    async def get_latest_block_reference(self) -> BlockReference:
        self.block_requests += 1
        blockhash = base58.b58encode(secrets.token_bytes(32)).decode("ascii")
        self._valid_blockhashes.add(blockhash)
        return BlockReference(blockhash, 1000 + self.block_requests)

    async def submit(self, raw_transaction: bytes) -> str:
        tx = Transaction.deserialize(raw_transaction)
        self.submitted.append(tx)
        if self.expire_next > 0:
            self.expire_next -= 1
            raise BlockhashExpired("Blockhash not found")
        if tx.recent_blockhash not in self._valid_blockhashes:
            raise BlockhashExpired("Blockhash not found")
        if not tx.verify_signatures():
            raise TransactionFailed(tx.signature, "signature verification failed")

        snapshot = (dict(self.accounts), dict(self.owners), dict(self.lamports))
        try:
            self._execute(tx)
        except (Rejected, VeilError) as e:
            self.accounts, self.owners, self.lamports = snapshot
            raise TransactionFailed(tx.signature, str(e)) from e

        self.confirmed[tx.signature] = tx
        return tx.signature

    async def confirm(
        self, signature: str, last_valid_block_height: Optional[int] = None
    ) -> Optional[bool]:
        return True if signature in self.confirmed else None

    # --- runtime -------------------------------------------------------------

    def _execute(self, tx: Transaction) -> None:
        instructions = tx.instructions
        verified_inline: Dict[int, object] = {}
        for index, instruction in enumerate(instructions):
            program = instruction.program_id
            if program == ix.SYSTEM_PROGRAM:
                self._system(instruction)
            elif program == ix.ZK_PROOF_PROGRAM:
                proof = self._proof(instruction)
                if proof is not None:
                    verified_inline[index] = proof
            elif program == ix.TOKEN_PROGRAM:
                self._token(instruction, index, verified_inline)
            else:
                raise Rejected(f"unknown program {program}")

    def _system(self, instruction) -> None:
        _, lamports, space = struct.unpack_from("<IQQ", instruction.data)
        owner = Pubkey(instruction.data[20:52])
        payer, new_account = (m.pubkey for m in instruction.accounts)
        if not instruction.accounts[1].is_signer:
            raise Rejected("new account must sign")
        if new_account in self.accounts:
            raise Rejected("account already in use")
        if lamports < ix.rent_exempt_lamports(space):
            raise Rejected("insufficient rent")
        self.accounts[new_account] = bytes(space)
        self.owners[new_account] = owner
        self.lamports[new_account] = lamports
        self.lamports[payer] = self.lamports.get(payer, 0) - lamports

    def _proof(self, instruction):
        proof_type = instruction.data[0]
        if proof_type == PROOF_IX_CLOSE_CONTEXT_STATE:
            context, destination, authority = instruction.accounts
            state = ProofContextState.from_bytes(self.accounts[context.pubkey])
            if not authority.is_signer or state.authority != authority.pubkey:
                raise Rejected("wrong context authority")
            del self.accounts[context.pubkey]
            del self.owners[context.pubkey]
            reclaimed = self.lamports.pop(context.pubkey)
            self.lamports[destination.pubkey] = self.lamports.get(destination.pubkey, 0) + reclaimed
            return None

        proof = _decode_proof(proof_type, instruction.data[1:])
        proof.verify()
        if not instruction.accounts:
            return proof

        context_meta, authority_meta = instruction.accounts
        address = context_meta.pubkey
        kind = ProofKind.from_proof_type(proof_type)
        existing = self.accounts.get(address)
        if existing is None or self.owners.get(address) != ix.ZK_PROOF_PROGRAM:
            raise Rejected("context account not created")
        if len(existing) != kind.account_size or any(existing):
            raise Rejected("context account wrong size or already initialized")
        self.accounts[address] = ProofContextState(
            authority_meta.pubkey, kind, proof.context.to_bytes()
        ).to_bytes()
        return None

    def _read_context(self, address: Pubkey, expected: ProofKind) -> bytes:
        state = ProofContextState.from_bytes(self.accounts[address])
        if state.kind is not expected:
            raise Rejected(f"expected {expected.name} context, found {state.kind.name}")
        return state.context

    def _owned_extension(self, address: Pubkey, owner_meta) -> ConfidentialTransferAccount:
        data = self.accounts[address]
        if not owner_meta.is_signer or account_owner(data) != owner_meta.pubkey:
            raise Rejected("owner did not sign")
        return self.extension(address)

    def _token(self, instruction, index: int, verified_inline: Dict[int, object]) -> None:
        data = instruction.data
        accounts = instruction.accounts

        if data[0] == TOKEN_IX_REALLOCATE:
            address = accounts[0].pubkey
            if len(self.accounts[address]) == TOKEN_ACCOUNT_BASE_SIZE:
                self.accounts[address] = with_extension(
                    self.accounts[address],
                    EXTENSION_CONFIDENTIAL_TRANSFER_ACCOUNT,
                    bytes(CT_ACCOUNT_EXTENSION_SIZE),
                )
            return

        if data[0] != TOKEN_IX_CONFIDENTIAL_TRANSFER_EXTENSION:
            raise Rejected(f"unsupported token instruction {data[0]}")
        decoded = ix.decode_token_instruction(data)

        if decoded.sub == CT_IX_CONFIGURE_ACCOUNT:
            address, owner_meta = accounts[0].pubkey, accounts[-1]
            ext = self._owned_extension(address, owner_meta)
            if ext.elgamal_pubkey.data != bytes(32):
                raise Rejected("account already configured")
            proof = verified_inline.get(index + decoded.proof_offsets[0])
            if not isinstance(proof, PubkeyValidityProofData):
                raise Rejected("pubkey validity proof missing")
            configured = ConfidentialTransferAccount(
                approved=True,
                elgamal_pubkey=proof.context.pubkey,
                pending_balance_lo=Ciphertext.zero(),
                pending_balance_hi=Ciphertext.zero(),
                available_balance=Ciphertext.zero(),
                decryptable_available_balance=decoded.new_decryptable_balance,
                allow_confidential_credits=True,
                allow_non_confidential_credits=True,
                pending_balance_credit_counter=0,
                maximum_pending_balance_credit_counter=decoded.max_pending_credit_counter,
                expected_pending_balance_credit_counter=0,
                actual_pending_balance_credit_counter=0,
            )
            self.accounts[address] = replace_extension(self.accounts[address], configured)

        elif decoded.sub == CT_IX_DEPOSIT:
            address, owner_meta = accounts[0].pubkey, accounts[-1]
            ext = self._owned_extension(address, owner_meta)
            public = account_amount(self.accounts[address])
            if decoded.amount > public:
                raise Rejected("insufficient funds")
            lo = decoded.amount & ((1 << TRANSFER_AMOUNT_LO_BITS) - 1)
            hi = decoded.amount >> TRANSFER_AMOUNT_LO_BITS
            ext = _replace(
                ext,
                pending_balance_lo=ext.pending_balance_lo.add_amount(lo),
                pending_balance_hi=ext.pending_balance_hi.add_amount(hi),
                pending_balance_credit_counter=ext.pending_balance_credit_counter + 1,
            )
            data_out = set_account_amount(self.accounts[address], public - decoded.amount)
            self.accounts[address] = replace_extension(data_out, ext)

        elif decoded.sub == CT_IX_APPLY_PENDING_BALANCE:
            address, owner_meta = accounts[0].pubkey, accounts[-1]
            ext = self._owned_extension(address, owner_meta)
            pending = Ciphertext.from_bytes(combine_lo_hi(
                ext.pending_balance_lo, ext.pending_balance_hi, TRANSFER_AMOUNT_LO_BITS
            ))
            ext = _replace(
                ext,
                available_balance=ext.available_balance + pending,
                pending_balance_lo=Ciphertext.zero(),
                pending_balance_hi=Ciphertext.zero(),
                decryptable_available_balance=decoded.new_decryptable_balance,
                expected_pending_balance_credit_counter=decoded.expected_pending_credit_counter,
                actual_pending_balance_credit_counter=ext.pending_balance_credit_counter,
                pending_balance_credit_counter=0,
            )
            self.accounts[address] = replace_extension(self.accounts[address], ext)

        elif decoded.sub == CT_IX_WITHDRAW:
            address, owner_meta = accounts[0].pubkey, accounts[-1]
            eq_address, range_address = accounts[2].pubkey, accounts[3].pubkey
            ext = self._owned_extension(address, owner_meta)
            equality = EqualityContext.from_bytes(
                self._read_context(eq_address, ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY)
            )
            ranges = RangeProofContext.from_bytes(
                self._read_context(range_address, ProofKind.BATCHED_RANGE_U64)
            )
            new_available = ext.available_balance.subtract_amount(decoded.amount)
            if equality.pubkey != ext.elgamal_pubkey or equality.ciphertext != new_available:
                raise Rejected("equality proof does not match the new balance")
            if ranges.commitments[0] != equality.commitment:
                raise Rejected("range proof does not cover the new balance")
            ext = _replace(
                ext,
                available_balance=new_available,
                decryptable_available_balance=decoded.new_decryptable_balance,
            )
            public = account_amount(self.accounts[address])
            data_out = set_account_amount(self.accounts[address], public + decoded.amount)
            self.accounts[address] = replace_extension(data_out, ext)

        elif decoded.sub == CT_IX_TRANSFER:
            source, destination, owner_meta = accounts[0].pubkey, accounts[2].pubkey, accounts[-1]
            eq_address, validity_address, range_address = (m.pubkey for m in accounts[3:6])
            ext = self._owned_extension(source, owner_meta)
            dest_ext = self.extension(destination)

            validity = GroupedValidityContext.from_bytes(
                self._read_context(validity_address, ProofKind.BATCHED_GROUPED_3_HANDLES_VALIDITY)
            )
            equality = EqualityContext.from_bytes(
                self._read_context(eq_address, ProofKind.CIPHERTEXT_COMMITMENT_EQUALITY)
            )
            ranges = RangeProofContext.from_bytes(
                self._read_context(range_address, ProofKind.BATCHED_RANGE_U128)
            )

            if validity.pubkeys[0] != ext.elgamal_pubkey or validity.pubkeys[1] != dest_ext.elgamal_pubkey:
                raise Rejected("validity proof is for other accounts")
            lo, hi = validity.grouped_lo, validity.grouped_hi
            if bytes(lo.ciphertext(2)) != decoded.auditor_ciphertext_lo:
                raise Rejected("auditor ciphertext mismatch")
            if bytes(hi.ciphertext(2)) != decoded.auditor_ciphertext_hi:
                raise Rejected("auditor ciphertext mismatch")

            debit = Ciphertext.from_bytes(combine_lo_hi(
                lo.ciphertext(0), hi.ciphertext(0), TRANSFER_AMOUNT_LO_BITS
            ))
            new_available = ext.available_balance - debit
            if equality.ciphertext != new_available:
                raise Rejected("equality proof does not match the new balance")
            if ranges.commitments[:3] != (equality.commitment, lo.commitment, hi.commitment):
                raise Rejected("range proof does not cover balance and amount")

            ext = _replace(
                ext,
                available_balance=new_available,
                decryptable_available_balance=decoded.new_decryptable_balance,
            )
            self.accounts[source] = replace_extension(self.accounts[source], ext)

            dest_ext = _replace(
                dest_ext,
                pending_balance_lo=dest_ext.pending_balance_lo + lo.ciphertext(1),
                pending_balance_hi=dest_ext.pending_balance_hi + hi.ciphertext(1),
                pending_balance_credit_counter=dest_ext.pending_balance_credit_counter + 1,
            )
            self.accounts[destination] = replace_extension(self.accounts[destination], dest_ext)

        else:
            raise Rejected(f"unsupported confidential-transfer instruction {decoded.sub}")


def _replace(ext: ConfidentialTransferAccount, **changes) -> ConfidentialTransferAccount:
    return dataclasses.replace(ext, **changes)


# ==============================================================================
# PROVER BACKEND
# ==============================================================================

class HmacProverBackend:
    """
    Stand-in proof system: a proof is an HMAC over the public inputs,
    issued only when the private preimage hashes to payment_ref.
    """

    def __init__(self, key: bytes = b"veil-test-prover"):
        self.key = key
        self.opened = 0
        self.closed = 0
        self.is_open = False

    def open(self) -> None:
        self.opened += 1
        self.is_open = True

    def close(self) -> None:
        self.closed += 1
        self.is_open = False

    def _mac(self, public: PublicInputs) -> bytes:
        encoded = b"".join(v.to_bytes(32, "big") for v in public.field_elements())
        return hmac.new(self.key, encoded, hashlib.sha256).digest()

    def prove(self, inputs: CircuitInputs) -> bytes:
        assert self.is_open
        if hashlib.sha256(inputs.private.preimage).digest() != inputs.public.payment_ref:
            raise ValueError("payment_ref mismatch")
        return self._mac(inputs.public)

    def verify(self, proof: bytes, public_inputs: PublicInputs) -> bool:
        assert self.is_open
        return hmac.compare_digest(proof, self._mac(public_inputs))


# ==============================================================================
# FIXTURES
# ==============================================================================

@pytest.fixture
def elgamal_keypair() -> ElGamalKeypair:
    """Deterministic ElGamal keypair."""
    return ElGamalKeypair.from_scalar(0x1234567890ABCDEF)


@pytest.fixture
def elgamal_keypair_2() -> ElGamalKeypair:
    return ElGamalKeypair.from_scalar(0xFEDCBA0987654321)


@pytest.fixture
def ae_key() -> AeKey:
    return AeKey(bytes(range(16)))


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner(bytes([1] * 32))


@pytest.fixture
def signer_2() -> FakeSigner:
    return FakeSigner(bytes([2] * 32))


@pytest.fixture
def mint() -> Pubkey:
    return Pubkey(bytes([7] * 32))


@pytest.fixture
def ledger() -> SimulatedLedger:
    return SimulatedLedger()


@pytest.fixture
def fast_config() -> VeilConfig:
    """Config with no waiting between retries or polls."""
    config = VeilConfig()
    config.submission = SubmissionConfig(
        max_attempts=3, backoff_sec=0.0, confirm_interval_sec=0.0, confirm_attempts=3
    )
    return config


@pytest.fixture
def prover_backend() -> HmacProverBackend:
    return HmacProverBackend()

