"""
Veil Ledger Protocol

Instruction encoding, transaction wire format, submission policy and the
confidential-transfer state machine. Import submodules directly.
"""
