"""
Data protection facade.

This module provides:
- DataProtectionProvider: Entry point; hands out purpose-scoped protectors
- DataProtector: protect / unprotect for one purpose chain
- TimeLimitedDataProtector: Protector whose payloads carry an expiration
- UnprotectResult: Plaintext plus key-status flags

Protect flow:
1. Ask the KeyManager for the current default key
2. Build the context header (key id + application/purpose binding)
3. Encrypt and authenticate under subkeys derived from the key and header
4. Return header || iv || ciphertext || tag

Unprotect fails with a single UnprotectError whatever the cause.
"""

from __future__ import annotations

import base64
import binascii
import logging
import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

from .context import HEADER_SIZE, ContextHeader
from .crypto import create_encryptor, generate_random_bytes
from .errors import (
    CryptoError,
    HeaderValidationError,
    InvalidKeyStateError,
    KeyNotFoundError,
    UnprotectError,
)
from .key_manager import KeyManagementOptions, KeyManager
from .protectors import LocalSecretKeyProtector
from .storage import InMemoryKeyRepository

logger = logging.getLogger(__name__)

TIME_LIMITED_PURPOSE = "data_protection.TimeLimitedDataProtector"

PurposeArg = Union[str, Iterable[str]]


def _normalize_purposes(purposes: Tuple[PurposeArg, ...]) -> Tuple[str, ...]:
    chain = []
    for purpose in purposes:
        if isinstance(purpose, str):
            chain.append(purpose)
        else:
            chain.extend(purpose)
    if not chain:
        raise ValueError("At least one purpose is required")
    for purpose in chain:
        if not isinstance(purpose, str) or not purpose:
            raise ValueError(f"Purposes must be non-empty strings, got {purpose!r}")
    return tuple(chain)


@dataclass(frozen=True)
class UnprotectResult:
    """
    Result of DataProtector.unprotect_with_status.

    ``requires_migration`` is set when the payload was not protected with the
    current default key, so callers can re-protect it.
    """

    plaintext: bytes
    requires_migration: bool
    was_revoked: bool


class DataProtectionProvider:
    """
    Creates data protectors bound to one key manager and application name.

    Protectors are cached per purpose chain; callers should hold on to them.
    """

    def __init__(self, key_manager: KeyManager, application_name: str = "") -> None:
        self._key_manager = key_manager
        self._application_name = application_name
        self._protectors: Dict[Tuple[str, ...], DataProtector] = {}

    @classmethod
    def ephemeral(
        cls,
        application_name: str = "",
        options: Optional[KeyManagementOptions] = None,
    ) -> DataProtectionProvider:
        """
        Provider whose keys live only in this process.

        Payloads become unreadable once the provider is gone.
        """
        manager = KeyManager(
            InMemoryKeyRepository(),
            LocalSecretKeyProtector(generate_random_bytes(32)),
            options,
        )
        return cls(manager, application_name)

    @property
    def key_manager(self) -> KeyManager:
        return self._key_manager

    @property
    def application_name(self) -> str:
        return self._application_name

    def create_protector(self, *purposes: PurposeArg) -> DataProtector:
        """
        Return the protector for a purpose chain.

        Accepts purposes as separate arguments or as one sequence:
        ``create_protector("App", "Cookies")`` equals
        ``create_protector(["App", "Cookies"])``.

        Raises:
            ValueError: If the chain is empty or has an empty purpose
        """
        chain = _normalize_purposes(purposes)
        protector = self._protectors.get(chain)
        if protector is None:
            protector = self._protectors.setdefault(chain, DataProtector(self, chain))
        return protector


class DataProtector:
    """Protects and unprotects payloads for one purpose chain."""

    def __init__(self, provider: DataProtectionProvider, purposes: Tuple[str, ...]) -> None:
        self._provider = provider
        self._key_manager = provider.key_manager
        self._purposes = purposes

    @property
    def purposes(self) -> Tuple[str, ...]:
        return self._purposes

    @property
    def application_name(self) -> str:
        return self._provider.application_name

    def create_protector(self, *purposes: PurposeArg) -> DataProtector:
        """Child protector whose chain extends this one."""
        return self._provider.create_protector(self._purposes, *purposes)

    def to_time_limited(self) -> TimeLimitedDataProtector:
        return TimeLimitedDataProtector(
            self.create_protector(TIME_LIMITED_PURPOSE), self._key_manager.now
        )

    async def protect(self, plaintext: bytes) -> bytes:
        """
        Protect plaintext under the current default key.

        Raises:
            KeyGenerationError / StorageError: No key could be obtained
        """
        if not isinstance(plaintext, (bytes, bytearray, memoryview)):
            raise TypeError("plaintext must be bytes")

        key = await self._key_manager.get_current_key()
        header = ContextHeader.build(self.application_name, self._purposes, key.key_id).to_bytes()
        body = create_encryptor(key.algorithm).encrypt(bytes(plaintext), key.master_key, header)
        return header + body.to_bytes()

    async def unprotect(self, payload: bytes) -> bytes:
        """
        Recover the plaintext of a payload produced by a protector with the
        same application name and purpose chain.

        Raises:
            UnprotectError: On any failure
        """
        result = await self._unprotect(payload, ignore_revocation=False)
        return result.plaintext

    async def unprotect_with_status(
        self, payload: bytes, ignore_revocation: bool = False
    ) -> UnprotectResult:
        """
        Unprotect and report whether the payload should be re-protected.

        ``ignore_revocation`` allows payloads under revoked keys regardless of
        the ``allow_revoked_decryption`` policy.
        """
        return await self._unprotect(payload, ignore_revocation)

    async def protect_str(self, plaintext: str) -> str:
        """Protect a UTF-8 string; returns URL-safe base64 without padding."""
        protected = await self.protect(plaintext.encode("utf-8"))
        return base64.urlsafe_b64encode(protected).rstrip(b"=").decode("ascii")

    async def unprotect_str(self, protected: str) -> str:
        """Inverse of protect_str."""
        try:
            raw = base64.urlsafe_b64decode(protected + "=" * (-len(protected) % 4))
        except (binascii.Error, ValueError):
            raise UnprotectError() from None
        plaintext = await self.unprotect(raw)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise UnprotectError() from None

    async def _unprotect(self, payload: bytes, ignore_revocation: bool) -> UnprotectResult:
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError("payload must be bytes")
        payload = bytes(payload)

        try:
            key_id, header = ContextHeader.parse_and_validate(
                payload, self.application_name, self._purposes
            )
            key = await self._key_manager.get_key(key_id)
            if key.master_key is None:
                raise InvalidKeyStateError(f"Key {key_id} is unusable: {key.unwrap_error}")
            allow_revoked = ignore_revocation or self._key_manager.options.allow_revoked_decryption
            if key.revoked and not allow_revoked:
                raise InvalidKeyStateError(f"Key {key_id} is revoked")

            encryptor = create_encryptor(key.algorithm)
            body = encryptor.parse(payload[HEADER_SIZE:])
            plaintext = encryptor.decrypt(body, key.master_key, header)
        except (HeaderValidationError, KeyNotFoundError, InvalidKeyStateError, CryptoError) as e:
            logger.debug("Unprotect failed for purposes %s: %s", self._purposes, e)
            raise UnprotectError() from None

        ring = await self._key_manager.get_ring()
        default = ring.default_key
        return UnprotectResult(
            plaintext=plaintext,
            requires_migration=key.revoked or default is None or default.key_id != key.key_id,
            was_revoked=key.revoked,
        )


class TimeLimitedDataProtector:
    """
    Wraps a DataProtector so that payloads expire.

    The plaintext is prefixed with its expiration (8-byte big-endian Unix
    milliseconds) before protection, so the expiration is authenticated too.
    """

    def __init__(self, inner: DataProtector, clock: Callable[[], datetime]) -> None:
        self._inner = inner
        self._clock = clock

    @property
    def purposes(self) -> Tuple[str, ...]:
        return self._inner.purposes

    def _now(self) -> datetime:
        return self._clock()

    async def protect(
        self,
        plaintext: bytes,
        lifetime: Optional[timedelta] = None,
        expiration: Optional[datetime] = None,
    ) -> bytes:
        """
        Protect plaintext until ``expiration`` (or now + ``lifetime``).

        Raises:
            ValueError: If neither or both of lifetime and expiration are given
        """
        if (lifetime is None) == (expiration is None):
            raise ValueError("Pass exactly one of lifetime or expiration")
        if expiration is None:
            expiration = self._now() + lifetime
        millis = int(expiration.timestamp() * 1000)
        return await self._inner.protect(struct.pack(">q", millis) + bytes(plaintext))

    async def unprotect(self, payload: bytes) -> Tuple[bytes, datetime]:
        """
        Returns:
            (plaintext, expiration)

        Raises:
            UnprotectError: If the payload is invalid or has expired
        """
        data = await self._inner.unprotect(payload)
        if len(data) < 8:
            raise UnprotectError()
        (millis,) = struct.unpack(">q", data[:8])
        expiration = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
        if self._now() >= expiration:
            logger.debug("Time-limited payload expired at %s", expiration.isoformat())
            raise UnprotectError()
        return data[8:], expiration
