"""
Veil Receipt Tests
Payment references, selective disclosure and the receipt envelope.
"""

import hashlib
import json
import time

import pytest

from veil.errors import (
    InvalidParameterError,
    InvalidReceipt,
    PaymentRefMismatch,
    ProofGenerationFailed,
    ProverNotInitialized,
    ReceiptNotAvailable,
)
from veil.receipts.disclosure import (
    DisclosurePolicy,
    PaymentRecord,
    PaymentStatus,
    PublicInputs,
    build_circuit_inputs,
)
from veil.receipts.payment_ref import (
    PREIMAGE_SIZE,
    fixed_width,
    generate_nonce,
    generate_payment_ref,
    payment_preimage,
    payment_ref_bytes,
)
from veil.receipts.prover import ReceiptProver, prover_toml, public_inputs_bytes
from veil.receipts.receipt import Receipt, generate_receipt, verify_receipt

from conftest import HmacProverBackend

INVOICE_ID = "3f2b8c1e-0d4a-4e8b-9a61-7c5d2e9f1a00"
SENDER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
RECIPIENT = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
NONCE = "a" * 64


def paid_record(amount=2_500_000, **overrides):
    fields = dict(
        invoice_id=INVOICE_ID,
        sender=SENDER,
        recipient=RECIPIENT,
        amount=amount,
        status=PaymentStatus.PAID,
        nonce=NONCE,
        payment_ref=generate_payment_ref(INVOICE_ID, SENDER, RECIPIENT, amount, NONCE),
        tx_signature="5" * 88,
        paid_at=1_700_000_000,
    )
    fields.update(overrides)
    return PaymentRecord(**fields)


class SlowBackend(HmacProverBackend):
    def prove(self, inputs):
        time.sleep(0.3)
        return super().prove(inputs)


class TestPaymentRef:
    """Test the 208-byte preimage and its hash."""

    def test_preimage_layout(self):
        """Test field widths 36 + 44 + 44 + 20 + 64."""
        preimage = payment_preimage(INVOICE_ID, SENDER, RECIPIENT, 2_500_000, NONCE)
        assert len(preimage) == PREIMAGE_SIZE == 208
        assert preimage[:36] == INVOICE_ID.encode()
        assert preimage[124:144] == b"2500000".ljust(20, b"\x00")
        assert preimage[144:] == NONCE.encode()

    def test_deterministic(self):
        """Test identical fields give the identical reference."""
        a = generate_payment_ref(INVOICE_ID, SENDER, RECIPIENT, 1, NONCE)
        b = generate_payment_ref(INVOICE_ID, SENDER, RECIPIENT, 1, NONCE)
        assert a == b
        assert len(a) == 64
        assert a == hashlib.sha256(payment_preimage(INVOICE_ID, SENDER, RECIPIENT, 1, NONCE)).hexdigest()

    @pytest.mark.parametrize("field", ["invoice_id", "sender", "recipient", "amount", "nonce"])
    def test_every_field_matters(self, field):
        """Test changing any one field changes the reference."""
        base = dict(invoice_id=INVOICE_ID, sender=SENDER, recipient=RECIPIENT, amount=10, nonce=NONCE)
        changed = dict(base)
        changed[field] = 11 if field == "amount" else "b" + base[field][1:]
        assert generate_payment_ref(**base) != generate_payment_ref(**changed)

    def test_truncation_and_padding(self):
        """Test long values are cut and short ones zero padded."""
        assert fixed_width("abc", 5) == b"abc\x00\x00"
        assert fixed_width("abcdef", 4) == b"abcd"

    def test_negative_amount(self):
        """Test a negative amount has no encoding."""
        with pytest.raises(InvalidParameterError):
            payment_preimage(INVOICE_ID, SENDER, RECIPIENT, -1, NONCE)

    def test_nonce_fills_field(self):
        """Test a fresh nonce is 64 hex characters and unique."""
        nonce = generate_nonce()
        assert len(nonce) == 64
        assert nonce != generate_nonce()

    def test_ref_bytes(self):
        """Test hex parsing with and without prefix."""
        ref = "ab" * 32
        assert payment_ref_bytes("0x" + ref) == bytes([0xAB] * 32)
        with pytest.raises(InvalidParameterError):
            payment_ref_bytes("ab")
        with pytest.raises(InvalidParameterError):
            payment_ref_bytes("zz" * 32)


class TestDisclosure:
    """Test public input selection."""

    def test_nothing_revealed(self):
        """Test the default policy exposes only the payment reference."""
        inputs = build_circuit_inputs(paid_record())
        public = inputs.public
        assert public.payment_ref.hex() == paid_record().payment_ref
        assert not any(public.invoice_id)
        assert not any(public.recipient)
        assert (public.min_amount, public.max_amount) == (0, 0)
        assert not public.enforce_min and not public.enforce_max
        assert public.revealed_invoice_id is None
        assert public.revealed_recipient is None
        assert hashlib.sha256(inputs.private.preimage).digest() == public.payment_ref

    def test_reveal_fields(self):
        """Test revealed fields equal their private counterparts."""
        policy = DisclosurePolicy(reveal_invoice_id=True, reveal_recipient=True)
        inputs = build_circuit_inputs(paid_record(), policy)
        assert inputs.public.invoice_id == inputs.private.invoice_id
        assert inputs.public.recipient == inputs.private.recipient
        assert inputs.public.revealed_invoice_id == INVOICE_ID
        assert inputs.public.revealed_recipient == RECIPIENT

    def test_bounds(self):
        """Test a set bound is flagged and an unset one is not."""
        inputs = build_circuit_inputs(paid_record(), DisclosurePolicy(min_amount=1_000_000))
        assert inputs.public.min_amount == 1_000_000
        assert inputs.public.enforce_min
        assert (inputs.public.max_amount, inputs.public.enforce_max) == (0, False)

    def test_zero_bound_is_flagged(self):
        """Test an explicit zero minimum differs from no minimum."""
        inputs = build_circuit_inputs(paid_record(), DisclosurePolicy(min_amount=0))
        assert inputs.public.enforce_min
        assert inputs.public.min_amount == 0

    def test_amount_outside_bounds(self):
        """Test a policy the amount does not satisfy cannot be proven."""
        with pytest.raises(ProofGenerationFailed):
            build_circuit_inputs(paid_record(amount=5), DisclosurePolicy(min_amount=10))

    @pytest.mark.parametrize("kwargs", [
        {"min_amount": -1},
        {"max_amount": 1 << 64},
        {"min_amount": 10, "max_amount": 5},
        {"min_amount": True},
        {"max_amount": 2.5},
        {"min_amount": "10"},
    ])
    def test_invalid_policy(self, kwargs):
        """Test bounds must be ordered u64 integers."""
        with pytest.raises(InvalidParameterError):
            DisclosurePolicy(**kwargs)

    @pytest.mark.parametrize("status", [PaymentStatus.PENDING, PaymentStatus.OVERDUE, PaymentStatus.CANCELLED])
    def test_unpaid(self, status):
        """Test only paid records have receipts."""
        with pytest.raises(ReceiptNotAvailable):
            build_circuit_inputs(paid_record(status=status))

    def test_missing_nonce(self):
        """Test a paid record without its nonce."""
        with pytest.raises(ReceiptNotAvailable):
            build_circuit_inputs(paid_record(nonce=None))

    def test_ref_mismatch(self):
        """Test a stored reference that does not match the fields."""
        with pytest.raises(PaymentRefMismatch):
            build_circuit_inputs(paid_record(payment_ref="00" * 32))

    def test_record_round_trip(self):
        """Test the stored camelCase form."""
        record = paid_record()
        data = record.to_dict()
        assert data["paymentNonce"] == NONCE
        assert data["status"] == "paid"
        assert PaymentRecord.from_dict(data) == record

    def test_field_elements(self):
        """Test the flattened public input order and count."""
        public = build_circuit_inputs(paid_record(), DisclosurePolicy(max_amount=9_000_000)).public
        elements = public.field_elements()
        assert len(elements) == 32 + 36 + 44 + 4
        assert elements[-4:] == [0, 9_000_000, 0, 1]
        assert len(public_inputs_bytes(public)) == 32 * len(elements)

    def test_prover_toml(self):
        """Test the witness file names every circuit parameter."""
        body = prover_toml(build_circuit_inputs(paid_record()))
        for name in ("invoice_id", "nonce", "payment_ref", "enforce_min", "max_amount"):
            assert f"\n{name} = " in "\n" + body
        assert "enforce_min = false" in body


class TestReceiptProver:
    """Test the lock-guarded prover wrapper."""

    @pytest.mark.asyncio
    async def test_not_open(self, prover_backend):
        """Test proving before open."""
        prover = ReceiptProver(prover_backend)
        with pytest.raises(ProverNotInitialized):
            await prover.prove(build_circuit_inputs(paid_record()))

    @pytest.mark.asyncio
    async def test_open_close_idempotent(self, prover_backend):
        """Test the backend is opened and closed once."""
        prover = ReceiptProver(prover_backend)
        await prover.open()
        await prover.open()
        assert prover.is_ready
        await prover.close()
        await prover.close()
        assert (prover_backend.opened, prover_backend.closed) == (1, 1)
        assert not prover.is_ready

    @pytest.mark.asyncio
    async def test_backend_error_wrapped(self, prover_backend):
        """Test a backend failure surfaces as ProofGenerationFailed."""
        prover = ReceiptProver(prover_backend)
        await prover.open()
        inputs = build_circuit_inputs(paid_record())
        bad = type(inputs)(
            private=type(inputs.private)(
                inputs.private.invoice_id, inputs.private.sender, inputs.private.recipient,
                fixed_width("1", 20), inputs.private.nonce,
            ),
            public=inputs.public,
        )
        with pytest.raises(ProofGenerationFailed):
            await prover.prove(bad)
        assert prover.is_ready

    @pytest.mark.asyncio
    async def test_timeout_abandons(self):
        """Test a slow proof is abandoned and the prover must be reopened."""
        backend = SlowBackend()
        prover = ReceiptProver(backend, timeout_sec=0.05)
        await prover.open()
        with pytest.raises(ProofGenerationFailed):
            await prover.prove(build_circuit_inputs(paid_record()))
        assert not prover.is_ready
        with pytest.raises(ProverNotInitialized):
            await prover.prove(build_circuit_inputs(paid_record()))


class TestReceipt:
    """Test generation, verification and the envelope."""

    @pytest.mark.asyncio
    async def test_generate_and_verify(self, prover_backend):
        """Test a fresh receipt verifies."""
        prover = ReceiptProver(prover_backend)
        await prover.open()
        receipt = await generate_receipt(prover, paid_record(), clock=lambda: 1_700_000_000.5)
        assert receipt.created_at == 1_700_000_000_500
        assert receipt.payment_ref == paid_record().payment_ref
        assert await verify_receipt(prover, receipt)
        assert await verify_receipt(prover, receipt, "0x" + paid_record().payment_ref.upper())

    @pytest.mark.asyncio
    async def test_expected_ref_mismatch(self, prover_backend):
        """Test a receipt for another payment fails verification."""
        prover = ReceiptProver(prover_backend)
        await prover.open()
        receipt = await generate_receipt(prover, paid_record())
        assert await verify_receipt(prover, receipt, "11" * 32) is False

    @pytest.mark.asyncio
    async def test_tampered_public_inputs(self, prover_backend):
        """Test a widened bound no longer verifies."""
        prover = ReceiptProver(prover_backend)
        await prover.open()
        receipt = await generate_receipt(prover, paid_record(), DisclosurePolicy(max_amount=3_000_000))
        envelope = receipt.to_envelope()
        envelope["publicInputs"]["maxAmount"] = 1_000_000
        envelope["disclosure"]["maxAmount"] = 1_000_000
        assert not await verify_receipt(prover, Receipt.from_envelope(envelope))

    @pytest.mark.asyncio
    async def test_save_load_same_outcome(self, prover_backend, tmp_path):
        """Test a loaded receipt verifies exactly like the original."""
        prover = ReceiptProver(prover_backend)
        await prover.open()
        policy = DisclosurePolicy(reveal_recipient=True, min_amount=1_000_000)
        receipt = await generate_receipt(prover, paid_record(), policy)

        path = receipt.save(tmp_path)
        assert path.name == f"zk-receipt-{INVOICE_ID[:8]}.json"
        loaded = Receipt.load(path)
        assert loaded == receipt
        assert loaded.disclosure == policy
        assert loaded.public_inputs.revealed_recipient == RECIPIENT
        assert await verify_receipt(prover, loaded) is True

    def test_envelope_fields(self):
        """Test the envelope header."""
        receipt = Receipt(
            invoice_id=INVOICE_ID,
            payment_ref="cd" * 32,
            created_at=1,
            disclosure=DisclosurePolicy(),
            public_inputs=PublicInputs(payment_ref=bytes([0xCD] * 32)),
            proof=b"\x01\x02",
        )
        envelope = json.loads(receipt.to_json())
        assert envelope["type"] == "zk-receipt"
        assert envelope["version"] == 1
        assert envelope["proof"] == "AQI="

    @pytest.mark.parametrize("change", [
        {"type": "invoice"},
        {"version": 2},
        {"proof": "not base64!"},
        {"paymentRef": "ef" * 32},
    ])
    def test_bad_envelope(self, change):
        """Test wrong type, version, proof encoding or bound reference."""
        envelope = Receipt(
            invoice_id=INVOICE_ID,
            payment_ref="cd" * 32,
            created_at=1,
            disclosure=DisclosurePolicy(),
            public_inputs=PublicInputs(payment_ref=bytes([0xCD] * 32)),
            proof=b"\x01",
        ).to_envelope()
        envelope.update(change)
        with pytest.raises(InvalidReceipt):
            Receipt.from_envelope(envelope)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("disclosure", [
        {"revealInvoiceId": True, "minAmount": 1000, "maxAmount": 2000},
        {"revealRecipient": False},
        {"revealInvoiceId": True},
        {"minAmount": None},
        {"minAmount": 999_999},
        {"maxAmount": 5_000_000},
    ])
    async def test_disclosure_backed_by_public_inputs(self, prover_backend, disclosure):
        """Test an envelope cannot claim more or less than its public inputs disclose."""
        prover = ReceiptProver(prover_backend)
        await prover.open()
        policy = DisclosurePolicy(reveal_recipient=True, min_amount=1_000_000)
        envelope = (await generate_receipt(prover, paid_record(), policy)).to_envelope()
        envelope["disclosure"].update(disclosure)
        with pytest.raises(InvalidReceipt):
            Receipt.from_envelope(envelope)

    def test_revealed_invoice_id_must_match(self):
        """Test a revealed invoice id must be the envelope's invoice id."""
        envelope = Receipt(
            invoice_id=INVOICE_ID,
            payment_ref="cd" * 32,
            created_at=1,
            disclosure=DisclosurePolicy(reveal_invoice_id=True),
            public_inputs=PublicInputs(
                payment_ref=bytes([0xCD] * 32),
                invoice_id=fixed_width(INVOICE_ID, 36),
            ),
            proof=b"\x01",
        ).to_envelope()
        assert Receipt.from_envelope(envelope).public_inputs.revealed_invoice_id == INVOICE_ID

        envelope["invoiceId"] = "another-invoice"
        with pytest.raises(InvalidReceipt):
            Receipt.from_envelope(envelope)

    def test_negative_bound(self):
        """Test an out-of-range bound is an invalid receipt."""
        envelope = Receipt(
            invoice_id=INVOICE_ID,
            payment_ref="cd" * 32,
            created_at=1,
            disclosure=DisclosurePolicy(),
            public_inputs=PublicInputs(payment_ref=bytes([0xCD] * 32)),
            proof=b"\x01",
        ).to_envelope()
        envelope["disclosure"]["minAmount"] = -1
        with pytest.raises(InvalidReceipt):
            Receipt.from_envelope(envelope)

    def test_missing_field(self):
        """Test an envelope without public inputs."""
        with pytest.raises(InvalidReceipt):
            Receipt.from_envelope({"type": "zk-receipt", "version": 1, "proof": ""})

    def test_not_json(self):
        with pytest.raises(InvalidReceipt):
            Receipt.from_json("{")
