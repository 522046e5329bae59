"""
Veil Session Tests
Paying an invoice confidentially, then proving the payment.
"""

import dataclasses

import pytest

from veil.errors import ConfigError, InsufficientBalance, InvalidStateTransition, ReceiptNotAvailable
from veil.protocol import instructions as ix
from veil.protocol.interfaces import InvoiceStore, Ledger, Signer
from veil.protocol.transaction import Pubkey
from veil.receipts.disclosure import DisclosurePolicy, PaymentRecord, PaymentStatus
from veil.receipts.payment_ref import generate_payment_ref
from veil.session import Session

ALICE_ACCOUNT = Pubkey(bytes([0xA1] * 32))
BOB_ACCOUNT = Pubkey(bytes([0xB1] * 32))


class MemoryInvoiceStore:
    def __init__(self):
        self.records = {}

    async def create(self, record: PaymentRecord) -> PaymentRecord:
        self.records[record.invoice_id] = record
        return record

    async def get(self, invoice_id: str):
        return self.records.get(invoice_id)

    async def update(self, invoice_id: str, **fields) -> PaymentRecord:
        record = dataclasses.replace(self.records[invoice_id], **fields)
        self.records[invoice_id] = record
        return record


class StoreDown(Exception):
    pass


class FlakyInvoiceStore(MemoryInvoiceStore):
    """Fails the next update that touches the named field."""

    def __init__(self, fail_field):
        super().__init__()
        self.fail_field = fail_field

    async def update(self, invoice_id: str, **fields) -> PaymentRecord:
        if self.fail_field in fields:
            self.fail_field = None
            raise StoreDown("invoice store unavailable")
        return await super().update(invoice_id, **fields)


def _transfer_signatures(ledger):
    return [
        signature for signature, tx in ledger.confirmed.items()
        if any(i.program_id == ix.TOKEN_PROGRAM and i.data[:2] == bytes([27, 7]) for i in tx.instructions)
    ]


async def _funded_session(ledger, signer, mint, config, backend):
    ledger.add_token_account(ALICE_ACCOUNT, mint, signer.identity, 1_000_000_000)
    session = Session(signer, ledger, config, backend)
    await session.open()
    await session.orchestrator.configure(ALICE_ACCOUNT, mint)
    await session.orchestrator.deposit(ALICE_ACCOUNT, mint, 500_000)
    await session.orchestrator.apply_pending(ALICE_ACCOUNT, 500_000)
    return session


async def _recipient(ledger, signer_2, mint, config, backend):
    ledger.add_token_account(BOB_ACCOUNT, mint, signer_2.identity, 0)
    session = Session(signer_2, ledger, config, backend)
    await session.open(with_prover=False)
    await session.orchestrator.configure(BOB_ACCOUNT, mint)
    return session


class TestCapabilities:
    def test_doubles_satisfy_protocols(self, signer, ledger):
        """Test the test doubles implement the runtime-checkable capabilities."""
        assert isinstance(signer, Signer)
        assert isinstance(ledger, Ledger)
        assert isinstance(MemoryInvoiceStore(), InvoiceStore)


class TestSessionLifecycle:
    """Test explicit open / close."""

    @pytest.mark.asyncio
    async def test_closed_session(self, signer, ledger, prover_backend):
        """Test a session must be opened before use."""
        session = Session(signer, ledger, prover_backend=prover_backend)
        with pytest.raises(InvalidStateTransition):
            await session.balance(ALICE_ACCOUNT)

    @pytest.mark.asyncio
    async def test_open_close(self, signer, ledger, fast_config, prover_backend):
        """Test open derives keys and opens the prover; close drops both."""
        async with Session(signer, ledger, fast_config, prover_backend) as session:
            assert session.is_open
            assert session.keys.identity == str(signer.identity)
            assert prover_backend.is_open
        assert not session.is_open
        assert not prover_backend.is_open
        assert session.key_derivation.cached is None

    @pytest.mark.asyncio
    async def test_invalid_config(self, signer, ledger, fast_config, prover_backend):
        """Test a session refuses to open with an invalid config."""
        fast_config.submission.max_attempts = 0
        with pytest.raises(ConfigError):
            await Session(signer, ledger, fast_config, prover_backend).open()

    @pytest.mark.asyncio
    async def test_identity_switch(self, signer, signer_2, ledger, fast_config, prover_backend):
        """Test a new wallet identity gets its own keys and orchestrator."""
        session = Session(signer, ledger, fast_config, prover_backend)
        await session.open(with_prover=False)
        first = session.orchestrator

        session.signer = signer_2
        await session.refresh_identity()
        assert session.orchestrator is not first
        assert session.keys.identity == str(signer_2.identity)


class TestPayAndProve:
    """Test invoice payment and receipts end to end."""

    @pytest.mark.asyncio
    async def test_pay_then_receipt(self, ledger, signer, signer_2, mint, fast_config, prover_backend):
        """Test a paid invoice yields a receipt that verifies against its reference."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        payee = await _recipient(ledger, signer_2, mint, fast_config, prover_backend)

        store = MemoryInvoiceStore()
        await store.create(PaymentRecord(
            invoice_id="inv-2024-0042",
            sender=str(signer.identity),
            recipient=str(signer_2.identity),
            amount=125_000,
        ))

        record = await payer.pay_invoice(store, "inv-2024-0042", ALICE_ACCOUNT, mint, BOB_ACCOUNT)
        assert record.status is PaymentStatus.PAID
        assert record.tx_signature in ledger.confirmed
        assert record.payment_ref == generate_payment_ref(
            record.invoice_id, record.sender, record.recipient, record.amount, record.nonce
        )
        assert (await payer.balance(ALICE_ACCOUNT)).available == 375_000
        assert ledger.extension(BOB_ACCOUNT).pending_balance_credit_counter == 1

        policy = DisclosurePolicy(reveal_recipient=True, min_amount=100_000)
        receipt = await payer.generate_receipt(record, policy)
        assert receipt.public_inputs.revealed_recipient == str(signer_2.identity)
        assert await payer.verify_receipt(receipt, record.payment_ref)
        assert not await payer.verify_receipt(receipt, "00" * 32)

        await payee.close()
        await payer.close()

    @pytest.mark.asyncio
    async def test_already_paid(self, ledger, signer, mint, fast_config, prover_backend):
        """Test paying twice does not transfer twice."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        store = MemoryInvoiceStore()
        paid = PaymentRecord("inv-1", "a", "b", 10, PaymentStatus.PAID, "n", "r")
        await store.create(paid)
        submitted = len(ledger.submitted)

        assert await payer.pay_invoice(store, "inv-1", ALICE_ACCOUNT, mint, BOB_ACCOUNT) is paid
        assert len(ledger.submitted) == submitted

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, ledger, signer, mint, fast_config, prover_backend):
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        with pytest.raises(ReceiptNotAvailable):
            await payer.pay_invoice(MemoryInvoiceStore(), "nope", ALICE_ACCOUNT, mint, BOB_ACCOUNT)

    @pytest.mark.asyncio
    async def test_receipt_before_payment(self, ledger, signer, mint, fast_config, prover_backend):
        """Test an unpaid invoice has no receipt."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        with pytest.raises(ReceiptNotAvailable):
            await payer.generate_receipt(PaymentRecord("inv-1", "a", "b", 10))


class TestPaymentRecovery:
    """Test an invoice is never paid twice when the store or ledger fails mid-payment."""

    async def _invoice(self, store, signer, signer_2, amount=100_000):
        await store.create(PaymentRecord(
            invoice_id="inv-2024-0043",
            sender=str(signer.identity),
            recipient=str(signer_2.identity),
            amount=amount,
        ))

    @pytest.mark.asyncio
    async def test_unrecorded_payment_not_repeated(
        self, ledger, signer, signer_2, mint, fast_config, prover_backend
    ):
        """Test a transfer whose completion was not stored blocks a second transfer."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        await _recipient(ledger, signer_2, mint, fast_config, prover_backend)
        store = FlakyInvoiceStore("status")
        await self._invoice(store, signer, signer_2)

        with pytest.raises(StoreDown):
            await payer.pay_invoice(store, "inv-2024-0043", ALICE_ACCOUNT, mint, BOB_ACCOUNT)
        pending = await store.get("inv-2024-0043")
        assert pending.status is PaymentStatus.PENDING
        assert pending.nonce and pending.payment_ref
        assert (await payer.balance(ALICE_ACCOUNT)).available == 400_000

        with pytest.raises(InvalidStateTransition):
            await payer.pay_invoice(store, "inv-2024-0043", ALICE_ACCOUNT, mint, BOB_ACCOUNT)
        assert (await payer.balance(ALICE_ACCOUNT)).available == 400_000
        assert ledger.extension(BOB_ACCOUNT).pending_balance_credit_counter == 1

        [signature] = _transfer_signatures(ledger)
        record = await payer.reconcile_payment(store, "inv-2024-0043", signature)
        assert record.status is PaymentStatus.PAID
        assert record.tx_signature == signature
        assert record.nonce == pending.nonce
        assert record.payment_ref == pending.payment_ref

        receipt = await payer.generate_receipt(record)
        assert await payer.verify_receipt(receipt, pending.payment_ref)

    @pytest.mark.asyncio
    async def test_reservation_not_stored(
        self, ledger, signer, signer_2, mint, fast_config, prover_backend
    ):
        """Test nothing is transferred when the nonce cannot be stored."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        await _recipient(ledger, signer_2, mint, fast_config, prover_backend)
        store = FlakyInvoiceStore("nonce")
        await self._invoice(store, signer, signer_2)
        submitted = len(ledger.submitted)

        with pytest.raises(StoreDown):
            await payer.pay_invoice(store, "inv-2024-0043", ALICE_ACCOUNT, mint, BOB_ACCOUNT)
        assert len(ledger.submitted) == submitted
        assert (await store.get("inv-2024-0043")).nonce is None

        record = await payer.pay_invoice(store, "inv-2024-0043", ALICE_ACCOUNT, mint, BOB_ACCOUNT)
        assert record.status is PaymentStatus.PAID
        assert (await payer.balance(ALICE_ACCOUNT)).available == 400_000

    @pytest.mark.asyncio
    async def test_failed_transfer_releases_reservation(
        self, ledger, signer, signer_2, mint, fast_config, prover_backend
    ):
        """Test a transfer that certainly did not land can be paid again."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        await _recipient(ledger, signer_2, mint, fast_config, prover_backend)
        store = MemoryInvoiceStore()
        await self._invoice(store, signer, signer_2, amount=900_000)

        with pytest.raises(InsufficientBalance):
            await payer.pay_invoice(store, "inv-2024-0043", ALICE_ACCOUNT, mint, BOB_ACCOUNT)
        record = await store.get("inv-2024-0043")
        assert record.status is PaymentStatus.PENDING
        assert record.nonce is None and record.payment_ref is None

    @pytest.mark.asyncio
    async def test_reconcile_without_signature(self, ledger, signer, mint, fast_config, prover_backend):
        """Test dropping a reservation the caller found never landed."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        store = MemoryInvoiceStore()
        await store.create(PaymentRecord("inv-1", "a", "b", 10, nonce="n", payment_ref="r"))

        with pytest.raises(InvalidStateTransition):
            await payer.pay_invoice(store, "inv-1", ALICE_ACCOUNT, mint, BOB_ACCOUNT)
        record = await payer.reconcile_payment(store, "inv-1")
        assert record.nonce is None
        assert record.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_reconcile_unconfirmed_signature(self, ledger, signer, mint, fast_config, prover_backend):
        """Test a signature the ledger has not confirmed does not mark the invoice paid."""
        payer = await _funded_session(ledger, signer, mint, fast_config, prover_backend)
        store = MemoryInvoiceStore()
        await store.create(PaymentRecord("inv-1", "a", "b", 10, nonce="n", payment_ref="r"))

        with pytest.raises(InvalidStateTransition):
            await payer.reconcile_payment(store, "inv-1", "1" * 64)
        assert (await store.get("inv-1")).status is PaymentStatus.PENDING
