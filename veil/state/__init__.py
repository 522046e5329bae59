"""Veil account balance state."""

from veil.state.balance import (
    BalanceRecord,
    ConfidentialTransferAccount,
    decode,
    read_extension,
    read_public_balance,
)

__all__ = [
    "BalanceRecord",
    "ConfidentialTransferAccount",
    "decode",
    "read_extension",
    "read_public_balance",
]
