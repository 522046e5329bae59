"""
Veil Transaction Wire Format

Addresses, instructions and legacy-format ledger transactions.

MESSAGE LAYOUT:
    header(3) || short_vec<account_key(32)> || recent_blockhash(32)
    || short_vec<compiled_instruction>

COMPILED INSTRUCTION:
    program_id_index(u8) || short_vec<u8 account index> || short_vec<u8 data>

TRANSACTION:
    short_vec<signature(64)> || message
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import base58
import nacl.signing
import nacl.exceptions

from veil.errors import InvalidParameterError

logger = logging.getLogger(__name__)

PUBKEY_SIZE = 32
SIGNATURE_SIZE = 64
EMPTY_SIGNATURE = bytes(SIGNATURE_SIZE)


# ==============================================================================
# SHORT-VEC
# ==============================================================================

def encode_length(n: int) -> bytes:
    """Compact u16 length prefix (7 bits per byte, little-endian)."""
    out = bytearray()
    while True:
        byte = n & 0x7F
        n >>= 7
        if n:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_length(data: bytes, offset: int) -> Tuple[int, int]:
    """Return (length, bytes_consumed)."""
    value = 0
    for i in range(3):
        byte = data[offset + i]
        value |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return value, i + 1
    raise InvalidParameterError("short_vec", "length prefix too long")


# ==============================================================================
# ADDRESSES AND KEYS
# ==============================================================================

@dataclass(frozen=True, slots=True)
class Pubkey:
    """
    Ledger address.

    SIZE: 32 bytes
    TEXT: base58
    """
    data: bytes

    def __post_init__(self):
        if len(self.data) != PUBKEY_SIZE:
            raise InvalidParameterError(
                "pubkey", f"must be {PUBKEY_SIZE} bytes, got {len(self.data)}"
            )

    def __bytes__(self) -> bytes:
        return self.data

    def __str__(self) -> str:
        return base58.b58encode(self.data).decode("ascii")

    def __repr__(self) -> str:
        return f"Pubkey({self})"

    @classmethod
    def from_string(cls, text: str) -> Pubkey:
        try:
            return cls(base58.b58decode(text))
        except ValueError as e:
            raise InvalidParameterError("pubkey", str(e)) from e


class Keypair:
    """Ed25519 signing keypair (ledger accounts, ephemeral context accounts)."""

    def __init__(self, signing_key: Optional[nacl.signing.SigningKey] = None):
        if signing_key is None:
            signing_key = nacl.signing.SigningKey.generate()
        self._signing_key = signing_key
        self.pubkey = Pubkey(bytes(self._signing_key.verify_key))

    @classmethod
    def from_seed(cls, seed: bytes) -> Keypair:
        return cls(nacl.signing.SigningKey(seed))

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair({self.pubkey})"


def verify_signature(pubkey: Pubkey, message: bytes, signature: bytes) -> bool:
    try:
        nacl.signing.VerifyKey(pubkey.data).verify(message, signature)
        return True
    except nacl.exceptions.BadSignatureError:
        return False


# ==============================================================================
# INSTRUCTIONS
# ==============================================================================

@dataclass(frozen=True, slots=True)
class AccountMeta:
    pubkey: Pubkey
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class Instruction:
    program_id: Pubkey
    accounts: Tuple[AccountMeta, ...]
    data: bytes

    def __post_init__(self):
        object.__setattr__(self, "accounts", tuple(self.accounts))


@dataclass(frozen=True, slots=True)
class BlockReference:
    """Recent blockhash plus the last block height at which it is accepted."""
    blockhash: str
    last_valid_block_height: int = 0


# ==============================================================================
# MESSAGE
# ==============================================================================

@dataclass
class Message:
    num_required_signatures: int
    num_readonly_signed: int
    num_readonly_unsigned: int
    account_keys: List[Pubkey]
    recent_blockhash: str
    instructions: List[Tuple[int, List[int], bytes]] = field(default_factory=list)

    @classmethod
    def compile(
        cls,
        fee_payer: Pubkey,
        instructions: Sequence[Instruction],
        recent_blockhash: str
    ) -> Message:
        """Order keys: writable signers, readonly signers, writable, readonly."""
        flags: Dict[Pubkey, List[bool]] = {fee_payer: [True, True]}
        for ix in instructions:
            for meta in ix.accounts:
                entry = flags.setdefault(meta.pubkey, [False, False])
                entry[0] |= meta.is_signer
                entry[1] |= meta.is_writable
            flags.setdefault(ix.program_id, [False, False])

        def bucket(key: Pubkey) -> int:
            signer, writable = flags[key]
            return (0 if signer else 2) + (0 if writable else 1)

        # dicts preserve first-seen order, sorted() is stable
        keys = sorted(flags, key=bucket)
        index = {key: i for i, key in enumerate(keys)}

        compiled = [
            (index[ix.program_id], [index[m.pubkey] for m in ix.accounts], bytes(ix.data))
            for ix in instructions
        ]
        buckets = [bucket(k) for k in keys]
        return cls(
            num_required_signatures=sum(1 for b in buckets if b < 2),
            num_readonly_signed=buckets.count(1),
            num_readonly_unsigned=buckets.count(3),
            account_keys=keys,
            recent_blockhash=recent_blockhash,
            instructions=compiled,
        )

    def is_signer(self, i: int) -> bool:
        return i < self.num_required_signatures

    def is_writable(self, i: int) -> bool:
        if i < self.num_required_signatures:
            return i < self.num_required_signatures - self.num_readonly_signed
        return i < len(self.account_keys) - self.num_readonly_unsigned

    def decompile(self) -> List[Instruction]:
        return [
            Instruction(
                program_id=self.account_keys[program_index],
                accounts=tuple(
                    AccountMeta(self.account_keys[i], self.is_signer(i), self.is_writable(i))
                    for i in account_indices
                ),
                data=data,
            )
            for program_index, account_indices, data in self.instructions
        ]

    def serialize(self) -> bytes:
        out = bytearray([
            self.num_required_signatures,
            self.num_readonly_signed,
            self.num_readonly_unsigned,
        ])
        out += encode_length(len(self.account_keys))
        for key in self.account_keys:
            out += key.data
        out += base58.b58decode(self.recent_blockhash)
        out += encode_length(len(self.instructions))
        for program_index, account_indices, data in self.instructions:
            out.append(program_index)
            out += encode_length(len(account_indices)) + bytes(account_indices)
            out += encode_length(len(data)) + data
        return bytes(out)

    @classmethod
    def deserialize(cls, data: bytes, offset: int = 0) -> Tuple[Message, int]:
        """Deserialize from bytes, return (Message, bytes_consumed)."""
        start = offset
        header = data[offset:offset + 3]
        offset += 3

        count, n = decode_length(data, offset)
        offset += n
        keys = []
        for _ in range(count):
            keys.append(Pubkey(data[offset:offset + PUBKEY_SIZE]))
            offset += PUBKEY_SIZE

        blockhash = base58.b58encode(data[offset:offset + 32]).decode("ascii")
        offset += 32

        count, n = decode_length(data, offset)
        offset += n
        instructions = []
        for _ in range(count):
            program_index = data[offset]
            offset += 1
            num_accounts, n = decode_length(data, offset)
            offset += n
            accounts = list(data[offset:offset + num_accounts])
            offset += num_accounts
            data_len, n = decode_length(data, offset)
            offset += n
            instructions.append((program_index, accounts, bytes(data[offset:offset + data_len])))
            offset += data_len

        message = cls(header[0], header[1], header[2], keys, blockhash, instructions)
        return message, offset - start


# ==============================================================================
# TRANSACTION
# ==============================================================================

class Transaction:
    """
    Signed ledger transaction.

    Signatures are collected from local keypairs (ephemeral accounts) and
    from the external signer for the fee payer.
    """

    def __init__(self, message: Message, signatures: Optional[List[bytes]] = None):
        self.message = message
        required = message.num_required_signatures
        self.signatures = list(signatures or [EMPTY_SIGNATURE] * required)
        self._message_bytes = message.serialize()

    @classmethod
    def build(
        cls,
        fee_payer: Pubkey,
        instructions: Sequence[Instruction],
        block: BlockReference
    ) -> Transaction:
        return cls(Message.compile(fee_payer, instructions, block.blockhash))

    @property
    def fee_payer(self) -> Pubkey:
        return self.message.account_keys[0]

    @property
    def recent_blockhash(self) -> str:
        return self.message.recent_blockhash

    @property
    def instructions(self) -> List[Instruction]:
        return self.message.decompile()

    @property
    def signer_keys(self) -> List[Pubkey]:
        return self.message.account_keys[:self.message.num_required_signatures]

    @property
    def signature(self) -> str:
        """Transaction id: base58 of the fee payer signature."""
        return base58.b58encode(self.signatures[0]).decode("ascii")

    def message_bytes(self) -> bytes:
        return self._message_bytes

    def add_signature(self, pubkey: Pubkey, signature: bytes) -> None:
        try:
            index = self.signer_keys.index(pubkey)
        except ValueError:
            raise InvalidParameterError("signer", f"{pubkey} is not a required signer")
        if len(signature) != SIGNATURE_SIZE:
            raise InvalidParameterError("signature", "must be 64 bytes")
        self.signatures[index] = signature

    def sign(self, *keypairs: Keypair) -> None:
        for keypair in keypairs:
            self.add_signature(keypair.pubkey, keypair.sign(self._message_bytes))

    def missing_signers(self) -> List[Pubkey]:
        return [
            key for key, sig in zip(self.signer_keys, self.signatures)
            if sig == EMPTY_SIGNATURE
        ]

    def verify_signatures(self) -> bool:
        return all(
            verify_signature(key, self._message_bytes, sig)
            for key, sig in zip(self.signer_keys, self.signatures)
        )

    def serialize(self) -> bytes:
        missing = self.missing_signers()
        if missing:
            raise InvalidParameterError(
                "transaction", f"missing signatures for {', '.join(map(str, missing))}"
            )
        out = bytearray(encode_length(len(self.signatures)))
        for sig in self.signatures:
            out += sig
        return bytes(out) + self._message_bytes

    @classmethod
    def deserialize(cls, data: bytes) -> Transaction:
        count, offset = decode_length(data, 0)
        signatures = [
            bytes(data[offset + i * SIGNATURE_SIZE:offset + (i + 1) * SIGNATURE_SIZE])
            for i in range(count)
        ]
        offset += count * SIGNATURE_SIZE
        message, _ = Message.deserialize(data, offset)
        return cls(message, signatures)
