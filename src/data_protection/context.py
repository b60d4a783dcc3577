"""
Context header: the unencrypted, authenticated prefix of every payload.

Wire layout (52 bytes)::

    magic(3) | version(1) | key_id(16) | binding(32)

``binding`` is a SHA-256 digest over the application name and the ordered
purpose chain. The whole prefix is the associated data handed to the
encryptor, so it is covered by the payload's authentication tag.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
from dataclasses import dataclass
from typing import Sequence, Tuple
from uuid import UUID

from .errors import HeaderValidationError

MAGIC = b"\x09\xf0\xc9"
FORMAT_VERSION = 1
KEY_ID_SIZE = 16
BINDING_SIZE = 32
HEADER_SIZE = len(MAGIC) + 1 + KEY_ID_SIZE + BINDING_SIZE


def _length_prefixed(value: str) -> bytes:
    encoded = value.encode("utf-8")
    return struct.pack(">I", len(encoded)) + encoded


def compute_binding(application_name: str, purposes: Sequence[str]) -> bytes:
    """Digest binding a payload to one application name and purpose chain."""
    digest = hashlib.sha256()
    digest.update(_length_prefixed(application_name))
    digest.update(struct.pack(">I", len(purposes)))
    for purpose in purposes:
        digest.update(_length_prefixed(purpose))
    return digest.digest()


@dataclass(frozen=True)
class ContextHeader:
    """Header fields of one protected payload."""

    key_id: UUID
    application_name: str
    purposes: Tuple[str, ...]
    version: int = FORMAT_VERSION

    @classmethod
    def build(
        cls, application_name: str, purposes: Sequence[str], key_id: UUID
    ) -> ContextHeader:
        return cls(
            key_id=key_id,
            application_name=application_name,
            purposes=tuple(purposes),
        )

    def to_bytes(self) -> bytes:
        """Serialize to the 52-byte wire prefix (also the AAD)."""
        return (
            MAGIC
            + bytes([self.version])
            + self.key_id.bytes
            + compute_binding(self.application_name, self.purposes)
        )

    @staticmethod
    def parse_and_validate(
        payload: bytes,
        application_name: str,
        purposes: Sequence[str],
    ) -> Tuple[UUID, bytes]:
        """
        Check a payload's header against the expected application and purposes.

        Args:
            payload: Full protected payload
            application_name: Application name of the unprotecting protector
            purposes: Purpose chain of the unprotecting protector

        Returns:
            (key_id, header_bytes) where header_bytes is the AAD to verify with

        Raises:
            HeaderValidationError: On a short payload, bad magic, unknown
                version or binding mismatch
        """
        if len(payload) < HEADER_SIZE:
            raise HeaderValidationError("Payload too short for header")

        if payload[: len(MAGIC)] != MAGIC:
            raise HeaderValidationError("Bad payload magic")

        version = payload[len(MAGIC)]
        if version != FORMAT_VERSION:
            raise HeaderValidationError(f"Unsupported payload version {version}")

        offset = len(MAGIC) + 1
        key_id = UUID(bytes=payload[offset : offset + KEY_ID_SIZE])
        offset += KEY_ID_SIZE

        expected = compute_binding(application_name, purposes)
        if not hmac.compare_digest(payload[offset:HEADER_SIZE], expected):
            raise HeaderValidationError("Application or purpose mismatch")

        return key_id, payload[:HEADER_SIZE]
