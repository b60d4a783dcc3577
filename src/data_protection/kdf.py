"""
Labeled subkey derivation.

Uses the NIST SP800-108 counter-mode KDF with HMAC-SHA512 as the PRF. The
same master key, label and context always produce the same subkey, and
subkeys under different labels are independent of each other and of the
master key.
"""

from __future__ import annotations

from typing import Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.kbkdf import CounterLocation, KBKDFHMAC, Mode

ENCRYPTION_LABEL = b"encryption"
VALIDATION_LABEL = b"validation"


class SubkeyDeriver:
    """Derives encryption and validation subkeys from a master key."""

    @staticmethod
    def derive(
        master_key: bytes,
        label: bytes,
        context: bytes = b"",
        length: int = 32,
    ) -> bytes:
        """
        Derive one subkey.

        Args:
            master_key: Raw master key bytes
            label: Purpose of the subkey (e.g. ``b"encryption"``)
            context: Caller context mixed into the derivation (the payload header)
            length: Subkey length in bytes

        Returns:
            Subkey bytes
        """
        kdf = KBKDFHMAC(
            algorithm=hashes.SHA512(),
            mode=Mode.CounterMode,
            length=length,
            rlen=4,
            llen=4,
            location=CounterLocation.BeforeFixed,
            label=label,
            context=context,
            fixed=None,
        )
        return kdf.derive(master_key)

    @classmethod
    def derive_pair(
        cls,
        master_key: bytes,
        context: bytes,
        encryption_length: int,
        validation_length: int,
    ) -> Tuple[bytes, bytes]:
        """Derive the (encryption, validation) subkeys for one payload."""
        return (
            cls.derive(master_key, ENCRYPTION_LABEL, context, encryption_length),
            cls.derive(master_key, VALIDATION_LABEL, context, validation_length),
        )
