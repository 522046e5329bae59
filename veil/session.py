"""
Veil Session

Owns everything that was process-wide state: the identity-keyed key
cache, the receipt prover and the orchestrator built on the derived keys.
Nothing is initialized implicitly; use open()/close() or `async with`.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from veil.config import VeilConfig
from veil.errors import (
    ConfigError,
    InvalidStateTransition,
    LedgerUnavailable,
    ReceiptNotAvailable,
    TransactionConfirmationTimeout,
    VeilError,
)
from veil.keys.derivation import DerivedKeys, KeyDerivation
from veil.protocol.interfaces import InvoiceStore, Ledger, Signer
from veil.protocol.orchestrator import StepResult, TransferOrchestrator
from veil.protocol.transaction import Pubkey
from veil.receipts.disclosure import DisclosurePolicy, PaymentRecord, PaymentStatus
from veil.receipts.payment_ref import generate_nonce, generate_payment_ref
from veil.receipts.prover import NoirCliBackend, ProverBackend, ReceiptProver
from veil.receipts.receipt import Receipt, generate_receipt, verify_receipt
from veil.state.balance import BalanceRecord

logger = logging.getLogger(__name__)

PAYMENT_IN_FLIGHT = "payment_in_flight"

# Transfer outcomes that do not rule out a late landing
UNSETTLED_ERRORS = (TransactionConfirmationTimeout, LedgerUnavailable)


class Session:
    """One caller's view of confidential balances and receipts."""

    def __init__(
        self,
        signer: Signer,
        ledger: Ledger,
        config: Optional[VeilConfig] = None,
        prover_backend: Optional[ProverBackend] = None,
    ):
        self.config = config or VeilConfig()
        self.signer = signer
        self.ledger = ledger
        self.key_derivation = KeyDerivation()
        self.prover = ReceiptProver(
            prover_backend or NoirCliBackend(self.config.prover),
            self.config.prover.timeout_sec,
        )
        self._orchestrator: Optional[TransferOrchestrator] = None

    async def __aenter__(self) -> Session:
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._orchestrator is not None

    async def open(self, with_prover: bool = True) -> None:
        """
        Validate config, derive keys for the signer and open the prover.

        Raises ConfigError, KeyDerivationFailed and its subclasses.
        """
        errors = self.config.validate()
        if errors:
            raise ConfigError(errors)
        await self.refresh_identity()
        if with_prover:
            await self.prover.open()
        logger.info(f"Session opened for {self.signer.identity}")

    async def close(self) -> None:
        await self.prover.close()
        self.key_derivation.clear()
        self._orchestrator = None
        logger.info("Session closed")

    async def refresh_identity(self) -> DerivedKeys:
        """Re-derive keys if the signer switched identity."""
        keys = await self.key_derivation.derive(self.signer)
        if self._orchestrator is None or self._orchestrator.keys is not keys:
            self._orchestrator = TransferOrchestrator(self.ledger, self.signer, keys, self.config)
        return keys

    @property
    def keys(self) -> DerivedKeys:
        return self.orchestrator.keys

    @property
    def orchestrator(self) -> TransferOrchestrator:
        if self._orchestrator is None:
            raise InvalidStateTransition("closed", "use session")
        return self._orchestrator

    # ==========================================================================
    # BALANCES
    # ==========================================================================

    async def balance(self, account: Pubkey) -> BalanceRecord:
        return await self.orchestrator.balance(account)

    # ==========================================================================
    # INVOICES AND RECEIPTS
    # ==========================================================================

    async def pay_invoice(
        self,
        store: InvoiceStore,
        invoice_id: str,
        source: Pubkey,
        mint: Pubkey,
        destination: Pubkey,
    ) -> PaymentRecord:
        """
        Pay a pending invoice with a confidential transfer and record the
        payment reference a later receipt will prove.

        The nonce and payment_ref are stored before the transfer is sent and
        the signature after it lands, so a crash in between leaves a record
        with a nonce and no signature. Such a record is refused here until
        reconcile_payment() settles it against the ledger.
        """
        record = await store.get(invoice_id)
        if record is None:
            raise ReceiptNotAvailable(invoice_id, "unknown invoice")
        if record.status is PaymentStatus.PAID:
            logger.info(f"Invoice {invoice_id} already paid")
            return record
        if record.nonce:
            raise InvalidStateTransition(PAYMENT_IN_FLIGHT, "pay_invoice")

        available = (await self.orchestrator.balance(source)).available
        nonce = generate_nonce()
        payment_ref = generate_payment_ref(
            record.invoice_id, record.sender, record.recipient, record.amount, nonce
        )
        await store.update(invoice_id, nonce=nonce, payment_ref=payment_ref)

        try:
            result: StepResult = await self.orchestrator.transfer(
                source, mint, destination, record.amount
            )
        except VeilError as e:
            await self._release_if_unsent(store, invoice_id, source, available, e)
            raise

        signature = result.signatures[-1]
        try:
            return await store.update(
                invoice_id,
                status=PaymentStatus.PAID,
                tx_signature=signature,
                paid_at=int(time.time() * 1000),
            )
        except Exception:
            logger.error(
                f"Invoice {invoice_id} paid by {signature} but not recorded, "
                f"reconcile_payment() with that signature"
            )
            raise

    async def _release_if_unsent(
        self,
        store: InvoiceStore,
        invoice_id: str,
        source: Pubkey,
        available: int,
        error: VeilError,
    ) -> None:
        # An unconfirmed transfer can still land; only a definite failure
        # with the source balance untouched frees the reservation
        if not isinstance(error, UNSETTLED_ERRORS):
            try:
                untouched = (await self.orchestrator.balance(source)).available == available
            except VeilError as e:
                logger.warning(f"Cannot re-read {source} after failed transfer ({e.message})")
                untouched = False
            if untouched:
                await store.update(invoice_id, nonce=None, payment_ref=None)
                logger.info(f"Transfer for {invoice_id} did not land ({error.message})")
                return
        logger.error(
            f"Transfer for {invoice_id} may have landed ({error.message}), "
            f"reconcile_payment() before paying again"
        )

    async def reconcile_payment(
        self,
        store: InvoiceStore,
        invoice_id: str,
        tx_signature: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Settle a payment left in flight.

        With the transfer's signature the record is marked paid once the
        ledger confirms it; without one the caller asserts nothing landed
        and the reservation is dropped so the invoice can be paid again.
        """
        record = await store.get(invoice_id)
        if record is None:
            raise ReceiptNotAvailable(invoice_id, "unknown invoice")
        if record.status is PaymentStatus.PAID or not record.nonce:
            return record

        if tx_signature is None:
            logger.warning(f"Releasing payment reservation for {invoice_id}")
            return await store.update(invoice_id, nonce=None, payment_ref=None)

        if not await self.ledger.confirm(tx_signature):
            raise InvalidStateTransition(PAYMENT_IN_FLIGHT, "reconcile_payment")
        return await store.update(
            invoice_id,
            status=PaymentStatus.PAID,
            tx_signature=tx_signature,
            paid_at=int(time.time() * 1000),
        )

    async def generate_receipt(
        self,
        record: PaymentRecord,
        policy: Optional[DisclosurePolicy] = None,
    ) -> Receipt:
        return await generate_receipt(self.prover, record, policy)

    async def verify_receipt(
        self,
        receipt: Receipt,
        expected_payment_ref: Optional[str] = None,
    ) -> bool:
        return await verify_receipt(self.prover, receipt, expected_payment_ref)
