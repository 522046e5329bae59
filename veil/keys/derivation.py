"""
Veil Key Derivation

Derives the ElGamal keypair and the decryptable-balance AE key from an
identity's signature over a fixed, versioned message:

    digest = SHA-512(signature)
    s      = clamp(digest[0:32]) mod L
    ae_key = digest[32:48]

The same identity therefore recovers the same keys on any device. If the
signature cannot produce a valid key, random keys are generated instead
and flagged non-deterministic (they will not be reproduced next session).

One KeyDerivation instance caches keys for one identity at a time;
deriving for another identity replaces the cache. Concurrent requests
for the same identity share one in-flight signing request.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from veil.constants import (
    CURVE_ORDER,
    KEY_DERIVATION_MESSAGE,
    KEY_DERIVATION_MIN_HASH_SIZE,
    AE_KEY_SIZE,
)
from veil.crypto.authenticated import AeKey
from veil.crypto.elgamal import ElGamalKeypair, ElGamalSecretKey
from veil.errors import (
    IdentityNotConnected,
    KeyDerivationFailed,
    SignerUnavailable,
    VeilError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DerivedKeys:
    """Keys for one identity session."""
    identity: str
    elgamal: ElGamalKeypair
    ae_key: AeKey
    deterministic: bool = True


def clamp_scalar(data: bytes) -> bytes:
    """Clear low 3 bits of byte 0, clear top bit and set second-top bit of byte 31."""
    clamped = bytearray(data[:32])
    clamped[0] &= 0xF8
    clamped[31] &= 0x7F
    clamped[31] |= 0x40
    return bytes(clamped)


def derive_from_signature(signature: bytes) -> Tuple[ElGamalKeypair, AeKey]:
    """
    Deterministic keys from a signature.

    Raises KeyDerivationFailed if the signature cannot yield valid keys.
    """
    if not signature:
        raise KeyDerivationFailed("Empty signature")

    digest = hashlib.sha512(signature).digest()
    if len(digest) < KEY_DERIVATION_MIN_HASH_SIZE:
        raise KeyDerivationFailed("Hash output too short")

    scalar = int.from_bytes(clamp_scalar(digest[:32]), "little") % CURVE_ORDER
    if scalar == 0:
        raise KeyDerivationFailed("Derived scalar is zero")

    return (
        ElGamalKeypair(ElGamalSecretKey(scalar)),
        AeKey(digest[32:32 + AE_KEY_SIZE]),
    )


class KeyDerivation:
    """Identity-keyed, single-flight key derivation with a one-entry cache."""

    def __init__(self, message: bytes = KEY_DERIVATION_MESSAGE):
        self.message = message
        self._cache: Optional[DerivedKeys] = None
        self._inflight: Dict[str, asyncio.Task] = {}

    @property
    def cached(self) -> Optional[DerivedKeys]:
        return self._cache

    def cached_for(self, identity) -> Optional[DerivedKeys]:
        if self._cache is not None and self._cache.identity == str(identity):
            return self._cache
        return None

    def clear(self) -> None:
        self._cache = None

    async def derive(self, signer) -> DerivedKeys:
        """
        Return keys for the signer's identity, signing only on a cache miss.

        Raises:
            IdentityNotConnected: signer has no identity
            SignerUnavailable: signer cannot sign arbitrary messages
            KeyDerivationFailed: the signer refused or errored
        """
        identity = getattr(signer, "identity", None)
        if not identity:
            raise IdentityNotConnected()
        if not callable(getattr(signer, "sign_message", None)):
            raise SignerUnavailable()

        key = str(identity)
        cached = self.cached_for(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._derive(signer, key))
            self._inflight[key] = task

            def _done(finished: asyncio.Task, key: str = key) -> None:
                if self._inflight.get(key) is finished:
                    del self._inflight[key]

            task.add_done_callback(_done)

        # A cancelled waiter must not cancel the shared derivation
        return await asyncio.shield(task)

    async def _derive(self, signer, key: str) -> DerivedKeys:
        logger.info(f"Requesting key derivation signature from {key}")
        try:
            signature = await signer.sign_message(self.message)
        except VeilError:
            raise
        except Exception as e:
            raise KeyDerivationFailed(f"Signer failed: {e}") from e

        try:
            if not isinstance(signature, (bytes, bytearray)):
                raise KeyDerivationFailed(f"Signature has type {type(signature).__name__}")
            elgamal, ae_key = derive_from_signature(bytes(signature))
            deterministic = True
        except KeyDerivationFailed as e:
            logger.warning(
                f"Deterministic derivation failed for {key} ({e.message}); "
                f"falling back to random keys that will not persist across sessions"
            )
            elgamal, ae_key = ElGamalKeypair.generate(), AeKey.generate()
            deterministic = False

        keys = DerivedKeys(key, elgamal, ae_key, deterministic)
        if self._cache is not None and self._cache.identity != key:
            logger.info(f"Identity changed, replacing cached keys for {self._cache.identity}")
        self._cache = keys
        return keys
