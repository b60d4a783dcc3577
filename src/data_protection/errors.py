"""
Exception classes for data protection operations.

Only ``UnprotectError`` escapes from ``DataProtector.unprotect``; the other
types are raised by the lower layers and by administrative operations.
"""

from __future__ import annotations


class DataProtectionError(Exception):
    """Base exception for all data protection operations."""

    pass


class CryptoError(DataProtectionError):
    """Cryptographic operation failed (encryption, decryption, key generation)."""

    pass


class KeyNotFoundError(DataProtectionError):
    """Key not found in the key ring or the repository."""

    pass


class InvalidKeyStateError(DataProtectionError):
    """Key is in an invalid state for the requested operation."""

    pass


class StorageError(DataProtectionError):
    """Key repository error (file system, database, in-memory, etc.)."""

    pass


class SerializationError(DataProtectionError):
    """Serialization or deserialization error."""

    pass


class KeyGenerationError(DataProtectionError):
    """A new key could not be generated or persisted."""

    pass


class KeyUnwrapError(DataProtectionError):
    """Stored key material could not be unwrapped by the key protector."""

    pass


class HeaderValidationError(DataProtectionError):
    """Payload header does not match the protector's application and purposes."""

    pass


class ConfigError(DataProtectionError):
    """Configuration error."""

    pass


class UnprotectError(DataProtectionError):
    """
    A protected payload could not be unprotected.

    Carries no detail about the cause: an unknown key, a header mismatch,
    a revoked key and a failed authentication all look the same.
    """

    def __init__(self, message: str = "The payload could not be unprotected.") -> None:
        super().__init__(message)
