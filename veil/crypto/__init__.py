"""
Veil Cryptographic Primitives

Group operations, ElGamal encryption, ciphertext algebra and the
authenticated encryption of decryptable balances.
"""

from veil.crypto.ed25519 import Ed25519Point, PedersenGenerators
from veil.crypto.ciphertext import (
    Ciphertext,
    GroupedCiphertext3Handles,
    parse,
    combine,
    add,
    subtract,
    scalar_multiply,
    combine_lo_hi,
)
from veil.crypto.elgamal import (
    ElGamalKeypair,
    ElGamalPubkey,
    ElGamalSecretKey,
    PedersenOpening,
    pedersen_commit,
    encrypt,
    encrypt_with,
    encrypt_grouped_with,
)
from veil.crypto.authenticated import AeKey

__all__ = [
    "Ed25519Point",
    "PedersenGenerators",
    "Ciphertext",
    "GroupedCiphertext3Handles",
    "parse",
    "combine",
    "add",
    "subtract",
    "scalar_multiply",
    "combine_lo_hi",
    "ElGamalKeypair",
    "ElGamalPubkey",
    "ElGamalSecretKey",
    "PedersenOpening",
    "pedersen_commit",
    "encrypt",
    "encrypt_with",
    "encrypt_grouped_with",
    "AeKey",
]
