"""
Veil External Interfaces

Capabilities consumed by the protocol. Anything that satisfies these
protocols (a wallet adapter, an RPC client, a test double) can be used.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

from veil.protocol.transaction import BlockReference, Pubkey, Transaction


@runtime_checkable
class Signer(Protocol):
    """Wallet capability: an identity that signs messages and transactions."""

    @property
    def identity(self) -> Optional[Pubkey]: ...

    async def sign_message(self, message: bytes) -> bytes: ...

    async def sign_transaction(self, transaction: Transaction) -> Transaction: ...


@runtime_checkable
class Ledger(Protocol):
    """Ledger read / submit capability."""

    async def get_account_info(self, address: Pubkey) -> Optional[bytes]: ...

    async def get_latest_block_reference(self) -> BlockReference: ...

    async def submit(self, raw_transaction: bytes) -> str:
        """Submit a serialized transaction, return its signature."""
        ...

    async def confirm(
        self, signature: str, last_valid_block_height: Optional[int] = None
    ) -> Optional[bool]:
        """
        Confirmation status of a submitted transaction.

        True once confirmed, None while unknown/pending. Raises
        TransactionFailed if the ledger rejected it and BlockhashExpired
        once last_valid_block_height (the height of the block reference
        the transaction was signed with) has passed.
        """
        ...


@runtime_checkable
class InvoiceStore(Protocol):
    """Persistent invoice/payment records (create, read, update by id)."""

    async def create(self, record: Any) -> Any: ...

    async def get(self, invoice_id: str) -> Optional[Any]: ...

    async def update(self, invoice_id: str, **fields: Any) -> Any: ...
