"""Veil ledger adapters."""

from veil.ledger.http import HttpLedger

__all__ = ["HttpLedger"]
