"""
Veil command line.

    veil receipt inspect FILE
    veil receipt verify FILE [--expected-ref HEX] [--config PATH]
    veil payment-ref --invoice-id ID --sender S --recipient R --amount N --nonce N
    veil config init PATH
    veil config check PATH
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional

from veil.config import LogConfig, VeilConfig, setup_logging
from veil.errors import VeilError
from veil.receipts.payment_ref import generate_payment_ref
from veil.receipts.prover import NoirCliBackend, ReceiptProver
from veil.receipts.receipt import Receipt, verify_receipt


def _load_config(path: Optional[str]) -> VeilConfig:
    return VeilConfig.load(path) if path else VeilConfig()


def cmd_receipt_inspect(args) -> int:
    receipt = Receipt.load(args.file)
    public = receipt.public_inputs
    summary = {
        "invoiceId": receipt.invoice_id,
        "paymentRef": receipt.payment_ref,
        "createdAt": receipt.created_at,
        "revealedInvoiceId": public.revealed_invoice_id,
        "revealedRecipient": public.revealed_recipient,
        "minAmount": public.min_amount if public.enforce_min else None,
        "maxAmount": public.max_amount if public.enforce_max else None,
        "proofBytes": len(receipt.proof),
    }
    print(json.dumps(summary, indent=2))
    return 0


async def _verify(receipt: Receipt, config: VeilConfig, expected: Optional[str]) -> bool:
    prover = ReceiptProver(NoirCliBackend(config.prover), config.prover.timeout_sec)
    await prover.open()
    try:
        return await verify_receipt(prover, receipt, expected)
    finally:
        await prover.close()


def cmd_receipt_verify(args) -> int:
    config = _load_config(args.config)
    receipt = Receipt.load(args.file)
    valid = asyncio.run(_verify(receipt, config, args.expected_ref))
    print("VALID" if valid else "INVALID")
    return 0 if valid else 1


def cmd_payment_ref(args) -> int:
    print(generate_payment_ref(args.invoice_id, args.sender, args.recipient, args.amount, args.nonce))
    return 0


def cmd_config_init(args) -> int:
    VeilConfig().save(args.path)
    return 0


def cmd_config_check(args) -> int:
    errors = VeilConfig.load(args.path).validate()
    for error in errors:
        print(f"  - {error}")
    print("OK" if not errors else f"{len(errors)} error(s)")
    return 0 if not errors else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="veil", description="Confidential balances and payment receipts")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    receipt = sub.add_parser("receipt", help="Inspect or verify a receipt file")
    receipt_sub = receipt.add_subparsers(dest="receipt_command", required=True)

    inspect = receipt_sub.add_parser("inspect", help="Show what a receipt discloses")
    inspect.add_argument("file")
    inspect.set_defaults(func=cmd_receipt_inspect)

    verify = receipt_sub.add_parser("verify", help="Verify a receipt proof")
    verify.add_argument("file")
    verify.add_argument("--expected-ref", help="payment_ref the receipt must match")
    verify.add_argument("--config", help="Config file with prover settings")
    verify.set_defaults(func=cmd_receipt_verify)

    ref = sub.add_parser("payment-ref", help="Compute a payment reference")
    ref.add_argument("--invoice-id", required=True)
    ref.add_argument("--sender", required=True)
    ref.add_argument("--recipient", required=True)
    ref.add_argument("--amount", required=True, type=int)
    ref.add_argument("--nonce", required=True)
    ref.set_defaults(func=cmd_payment_ref)

    config = sub.add_parser("config", help="Manage configuration files")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    init = config_sub.add_parser("init", help="Write a default config")
    init.add_argument("path")
    init.set_defaults(func=cmd_config_init)
    check = config_sub.add_parser("check", help="Validate a config")
    check.add_argument("path")
    check.set_defaults(func=cmd_config_check)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(LogConfig(level=args.log_level))
    try:
        return args.func(args)
    except VeilError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 2
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
