"""
Algorithm identifiers and the frozen per-key algorithm configuration.

A key's configuration is captured when the key is created and stored in its
record; later configuration changes only affect keys created afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict

from cryptography.hazmat.primitives import hashes

from .errors import SerializationError


class EncryptionAlgorithm(Enum):
    """Symmetric encryption algorithm used for payloads."""

    AES_128_CBC = "AES_128_CBC"
    AES_192_CBC = "AES_192_CBC"
    AES_256_CBC = "AES_256_CBC"
    AES_128_GCM = "AES_128_GCM"
    AES_256_GCM = "AES_256_GCM"

    def __str__(self) -> str:
        return self.value

    @property
    def key_size(self) -> int:
        """Encryption subkey size in bytes."""
        return int(self.value.split("_")[1]) // 8

    @property
    def is_aead(self) -> bool:
        """True for modes that authenticate on their own (no separate MAC)."""
        return self.value.endswith("_GCM")

    @classmethod
    def from_str(cls, s: str) -> EncryptionAlgorithm:
        """Parse from string."""
        try:
            return cls(str(s).upper().replace("-", "_"))
        except ValueError:
            raise SerializationError(f"Invalid encryption algorithm: {s}")


class ValidationAlgorithm(Enum):
    """MAC algorithm used by the CBC encryptors."""

    HMACSHA256 = "HMACSHA256"
    HMACSHA512 = "HMACSHA512"

    def __str__(self) -> str:
        return self.value

    def hash_algorithm(self) -> hashes.HashAlgorithm:
        """Hash used by the HMAC."""
        return hashes.SHA256() if self is ValidationAlgorithm.HMACSHA256 else hashes.SHA512()

    @property
    def key_size(self) -> int:
        """Validation subkey size in bytes (the digest size)."""
        return 32 if self is ValidationAlgorithm.HMACSHA256 else 64

    @property
    def tag_size(self) -> int:
        return self.key_size

    @classmethod
    def from_str(cls, s: str) -> ValidationAlgorithm:
        """Parse from string."""
        try:
            return cls(str(s).upper().replace("-", ""))
        except ValueError:
            raise SerializationError(f"Invalid validation algorithm: {s}")


@dataclass(frozen=True)
class AlgorithmConfiguration:
    """Encryption + validation algorithm pair, immutable once built."""

    encryption: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_CBC
    validation: ValidationAlgorithm = ValidationAlgorithm.HMACSHA256

    def to_dict(self) -> Dict[str, str]:
        return {"encryption": self.encryption.value, "validation": self.validation.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AlgorithmConfiguration:
        """
        Parse a configuration stored in a key record.

        Raises:
            SerializationError: If a field is missing or unknown
        """
        try:
            encryption = data["encryption"]
            validation = data["validation"]
        except (KeyError, TypeError) as e:
            raise SerializationError(f"Invalid algorithm configuration: {e}")
        return cls(
            encryption=EncryptionAlgorithm.from_str(encryption),
            validation=ValidationAlgorithm.from_str(validation),
        )

    def __str__(self) -> str:
        if self.encryption.is_aead:
            return self.encryption.value
        return f"{self.encryption.value}+{self.validation.value}"
