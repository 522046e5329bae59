"""Veil key derivation."""

from veil.keys.derivation import DerivedKeys, KeyDerivation, derive_from_signature

__all__ = ["DerivedKeys", "KeyDerivation", "derive_from_signature"]
