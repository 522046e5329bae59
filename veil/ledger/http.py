"""
Veil JSON-RPC Ledger

Ledger capability over a Solana-compatible JSON-RPC endpoint.

    getAccountInfo        account data (base64)
    getLatestBlockhash    block reference for signing
    sendTransaction       raw transaction (base64)
    getSignatureStatuses  confirmation polling

Error mapping:
    "Blockhash not found" / "block height exceeded"  -> BlockhashExpired
    transaction error in a status                     -> TransactionFailed
    transport failure / RPC error                     -> LedgerUnavailable
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional

import httpx

from veil.config import LedgerConfig
from veil.errors import BlockhashExpired, LedgerUnavailable, TransactionFailed
from veil.protocol.transaction import BlockReference, Pubkey

logger = logging.getLogger(__name__)

EXPIRY_MARKERS = ("blockhash not found", "block height exceeded")

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


def _is_expiry(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in EXPIRY_MARKERS)


class HttpLedger:
    """JSON-RPC ledger client. Use as an async context manager or call close()."""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or LedgerConfig()
        self._client = client or httpx.AsyncClient(timeout=self.config.timeout_sec)
        self._owns_client = client is None
        self._request_id = 0

    async def __aenter__(self) -> HttpLedger:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client.post(self.config.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            raise LedgerUnavailable(f"{method}: {e}") from e
        except ValueError as e:
            raise LedgerUnavailable(f"{method}: malformed response") from e

        error = body.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            if _is_expiry(message):
                raise BlockhashExpired(message)
            if method == "sendTransaction":
                raise TransactionFailed(None, message)
            raise LedgerUnavailable(f"{method}: {message}")
        return body.get("result")

    # ==========================================================================
    # LEDGER CAPABILITY
    # ==========================================================================

    async def get_account_info(self, address: Pubkey) -> Optional[bytes]:
        result = await self._call("getAccountInfo", [
            str(address),
            {"encoding": "base64", "commitment": self.config.commitment},
        ])
        value = (result or {}).get("value")
        if value is None:
            return None
        data, _encoding = value["data"]
        return base64.b64decode(data)

    async def get_latest_block_reference(self) -> BlockReference:
        result = await self._call("getLatestBlockhash", [{"commitment": self.config.commitment}])
        value = result["value"]
        return BlockReference(value["blockhash"], value["lastValidBlockHeight"])

    async def submit(self, raw_transaction: bytes) -> str:
        signature = await self._call("sendTransaction", [
            base64.b64encode(raw_transaction).decode(),
            {"encoding": "base64", "preflightCommitment": self.config.commitment},
        ])
        logger.debug(f"Submitted {signature}")
        return signature

    async def confirm(
        self, signature: str, last_valid_block_height: Optional[int] = None
    ) -> Optional[bool]:
        result = await self._call("getSignatureStatuses", [[signature]])
        statuses = (result or {}).get("value") or [None]
        status: Optional[Dict[str, Any]] = statuses[0]

        if status is None:
            await self._check_expiry(signature, last_valid_block_height)
            return None
        if status.get("err") is not None:
            raise TransactionFailed(signature, status["err"])

        reached = COMMITMENT_RANK.get(status.get("confirmationStatus") or "processed", 0)
        if reached >= COMMITMENT_RANK.get(self.config.commitment, 1):
            return True
        return None

    async def _check_expiry(self, signature: str, last_valid_block_height: Optional[int]) -> None:
        """An unknown signature past its last valid block height will never land."""
        if last_valid_block_height is None:
            return
        height = await self._call("getBlockHeight", [{"commitment": self.config.commitment}])
        if height > last_valid_block_height:
            raise BlockhashExpired(
                f"{signature} not seen by block height {last_valid_block_height}"
            )
