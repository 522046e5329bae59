"""
Veil Transaction Submission

Build -> sign -> submit -> confirm, with a bounded retry on block
reference expiry.

RETRY POLICY:
- Every attempt fetches a fresh block reference and rebuilds/re-signs.
- Only BlockhashExpired / TransactionConfirmationTimeout are retried,
  up to max_attempts, sleeping backoff_sec * attempt between attempts.
- Any other error propagates on the first attempt.

CONFIRMATION:
- Poll every confirm_interval_sec, up to confirm_attempts polls.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Sequence

from veil.config import SubmissionConfig
from veil.errors import RETRYABLE_ERRORS, TransactionConfirmationTimeout
from veil.protocol.interfaces import Ledger, Signer
from veil.protocol.transaction import Instruction, Keypair, Transaction

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class Submitter:
    """Sends instruction batches through a Signer and a Ledger."""

    def __init__(
        self,
        ledger: Ledger,
        signer: Signer,
        config: Optional[SubmissionConfig] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.ledger = ledger
        self.signer = signer
        self.config = config or SubmissionConfig()
        self._sleep = sleep

    async def send(
        self,
        instructions: Sequence[Instruction],
        extra_signers: Sequence[Keypair] = (),
        description: str = "transaction",
    ) -> str:
        """
        Submit instructions as one transaction and wait for confirmation.

        Returns:
            Transaction signature

        Raises:
            BlockhashExpired / TransactionConfirmationTimeout after the last attempt
            Any other error immediately
        """
        max_attempts = self.config.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                signature = await self._attempt(instructions, extra_signers)
                logger.info(f"{description} confirmed: {signature}")
                return signature
            except RETRYABLE_ERRORS as e:
                last_error = e
                if attempt >= max_attempts:
                    break
                delay = self.config.backoff_sec * attempt
                logger.warning(
                    f"{description} attempt {attempt}/{max_attempts} failed ({e.message}), "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        logger.error(f"{description} failed after {max_attempts} attempts")
        raise last_error

    async def _attempt(
        self,
        instructions: Sequence[Instruction],
        extra_signers: Sequence[Keypair],
    ) -> str:
        block = await self.ledger.get_latest_block_reference()
        tx = Transaction.build(self.signer.identity, instructions, block)
        if extra_signers:
            tx.sign(*extra_signers)
        tx = await self.signer.sign_transaction(tx)
        signature = await self.ledger.submit(tx.serialize())
        await self.confirm(signature, block.last_valid_block_height)
        return signature

    async def confirm(self, signature: str, last_valid_block_height: Optional[int] = None) -> None:
        attempts = self.config.confirm_attempts
        for _ in range(attempts):
            if await self.ledger.confirm(signature, last_valid_block_height):
                return
            await self._sleep(self.config.confirm_interval_sec)
        raise TransactionConfirmationTimeout(signature, attempts)
