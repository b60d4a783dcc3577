"""
Key manager: builds, caches and rotates the key ring.

This module provides:
- KeyManagementOptions: Lifetime, rotation and refresh policy
- KeyManager: Loads records from a KeyRepository, unwraps them with a
  KeyProtector and keeps an immutable KeyRing snapshot

Rotation is time-based. On every refresh the manager checks the default key;
when no default exists, or the default expires within ``rotation_threshold``
and no successor is waiting, a new key is generated, persisted and only then
made visible. A successor activates exactly when its predecessor expires.

Refreshes are single-flight per manager. If the repository cannot be read,
the previous ring is kept while its default key is still valid.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar
from uuid import UUID, uuid4

from .algorithms import AlgorithmConfiguration
from .crypto import SecureKey
from .errors import (
    ConfigError,
    CryptoError,
    InvalidKeyStateError,
    KeyGenerationError,
    KeyNotFoundError,
    KeyUnwrapError,
    StorageError,
)
from .keys import KeyDescriptor, KeyRecord, KeyRing
from .protectors import KeyProtector
from .storage import KeyRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class KeyManagementOptions:
    """Key lifetime and ring refresh policy."""

    key_lifetime: timedelta = timedelta(days=90)
    rotation_threshold: timedelta = timedelta(days=2)
    refresh_period: timedelta = timedelta(hours=24)
    fallback_retry_period: timedelta = timedelta(minutes=1)
    post_generation_refresh: timedelta = timedelta(minutes=1)
    auto_generate_keys: bool = True
    allow_revoked_decryption: bool = False
    io_retries: int = 3
    retry_backoff: float = 0.1
    algorithm: AlgorithmConfiguration = field(default_factory=AlgorithmConfiguration)

    def __post_init__(self) -> None:
        if self.key_lifetime <= timedelta(0):
            raise ConfigError("key_lifetime must be positive")
        if self.rotation_threshold < timedelta(0) or self.rotation_threshold >= self.key_lifetime:
            raise ConfigError("rotation_threshold must be non-negative and shorter than key_lifetime")
        if self.refresh_period <= timedelta(0):
            raise ConfigError("refresh_period must be positive")
        if self.io_retries < 0:
            raise ConfigError("io_retries must be non-negative")


class KeyManager:
    """
    Owns the key ring for one application scope.

    Construct one instance per repository and share it between all
    protectors of that scope.
    """

    def __init__(
        self,
        repository: KeyRepository,
        protector: KeyProtector,
        options: Optional[KeyManagementOptions] = None,
        *,
        additional_unwrappers: Sequence[KeyProtector] = (),
        clock: Clock = utc_now,
    ) -> None:
        """
        Args:
            repository: Where key records live
            protector: Wraps new keys and unwraps records it produced
            options: Lifetime / rotation policy
            additional_unwrappers: Protectors for records written by an earlier
                configuration, looked up by ``KeyRecord.protector``
            clock: Returns the current tz-aware UTC time
        """
        self._repository = repository
        self._protector = protector
        self._options = options or KeyManagementOptions()
        self._algorithm = self._options.algorithm
        self._unwrappers: Dict[str, KeyProtector] = {p.name: p for p in additional_unwrappers}
        self._unwrappers[protector.name] = protector
        self._clock = clock
        self._ring: Optional[KeyRing] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def options(self) -> KeyManagementOptions:
        return self._options

    @property
    def repository(self) -> KeyRepository:
        return self._repository

    @property
    def algorithm(self) -> AlgorithmConfiguration:
        """Configuration applied to keys created from now on."""
        return self._algorithm

    def set_algorithm(self, config: AlgorithmConfiguration) -> None:
        """Change the algorithm for future keys; existing keys keep theirs."""
        logger.info("Algorithm for new keys changed from %s to %s", self._algorithm, config)
        self._algorithm = config

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Ring access
    # =========================================================================

    async def get_ring(self) -> KeyRing:
        """Return the cached ring, refreshing it once it has expired."""
        ring = self._ring
        if ring is not None and ring.is_fresh(self.now()):
            return ring
        return await self._refresh(force=False, stale=ring)

    async def refresh_ring(self) -> KeyRing:
        """Re-read the repository and swap in a new ring."""
        return await self._refresh(force=True, stale=self._ring)

    async def get_current_key(self) -> KeyDescriptor:
        """
        Return the default key, generating one when none is valid.

        Raises:
            InvalidKeyStateError: No default key and automatic generation is off
            KeyGenerationError: A required key could not be persisted
            StorageError: Repository unreachable and no cached default key
        """
        ring = await self.get_ring()
        if ring.default_key is None:
            ring = await self.refresh_ring()
        if ring.default_key is None:
            raise InvalidKeyStateError(
                "No default key is available and automatic key generation is disabled"
            )
        return ring.default_key

    async def get_key(self, key_id: UUID) -> KeyDescriptor:
        """
        Resolve a key by ID from the cached ring, then from the repository.

        Raises:
            KeyNotFoundError: If neither knows the key
        """
        ring = await self.get_ring()
        key = ring.get(key_id)
        if key is None:
            logger.debug("Key %s not in cached ring, refreshing", key_id)
            ring = await self._refresh(force=True, stale=ring)
            key = ring.get(key_id)
        if key is None:
            raise KeyNotFoundError(str(key_id))
        return key

    async def list_keys(self) -> List[KeyDescriptor]:
        """All keys of the current ring, oldest first."""
        ring = await self.get_ring()
        return sorted(ring.keys.values(), key=lambda k: (k.creation_time, k.key_id.bytes))

    # =========================================================================
    # Administration
    # =========================================================================

    async def create_key(
        self,
        activation_time: Optional[datetime] = None,
        expiration_time: Optional[datetime] = None,
    ) -> KeyDescriptor:
        """
        Generate, wrap and persist a new key, then refresh the ring.

        Raises:
            KeyGenerationError: If the key could not be wrapped or persisted
        """
        key = await self._generate(activation_time, expiration_time)
        await self.refresh_ring()
        return key

    async def revoke_key(self, key_id: UUID, reason: Optional[str] = None) -> None:
        """
        Mark one key as revoked in the repository.

        Raises:
            KeyNotFoundError: If the repository has no such key
        """
        record = await self._with_retries("get", lambda: self._repository.get(key_id))
        if record is None:
            raise KeyNotFoundError(str(key_id))
        await self._with_retries("save", lambda: self._repository.save(record.with_revocation(reason)))
        logger.info("Revoked key %s (%s)", key_id, reason or "no reason given")
        await self.refresh_ring()

    async def revoke_all_keys(
        self,
        revocation_date: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Revoke every key created at or before ``revocation_date`` (default now).

        Returns:
            Number of keys newly revoked
        """
        cutoff = revocation_date or self.now()
        records = await self._with_retries("load", self._repository.load_all)
        revoked = 0
        for record in records:
            if record.revoked or record.creation_time > cutoff:
                continue
            await self._with_retries(
                "save", lambda r=record: self._repository.save(r.with_revocation(reason))
            )
            revoked += 1
        logger.info("Revoked %d keys created on or before %s", revoked, cutoff.isoformat())
        await self.refresh_ring()
        return revoked

    # =========================================================================
    # Refresh internals
    # =========================================================================

    async def _refresh(self, force: bool, stale: Optional[KeyRing]) -> KeyRing:
        async with self._refresh_lock:
            now = self.now()
            current = self._ring
            # Another caller refreshed while this one waited for the lock.
            if current is not None and current.is_fresh(now) and (not force or current is not stale):
                return current

            try:
                ring = await self._build_ring(now)
            except StorageError as e:
                if current is None or not self._has_valid_default(current, now):
                    raise
                logger.warning(
                    "Key repository unavailable, keeping previous key ring (default %s): %s",
                    current.default_key.key_id,
                    e,
                )
                ring = KeyRing(
                    current.keys.values(),
                    current.default_key,
                    now + self._options.fallback_retry_period,
                )

            self._ring = ring
            return ring

    @staticmethod
    def _has_valid_default(ring: KeyRing, now: datetime) -> bool:
        default = ring.default_key
        return default is not None and not default.is_expired(now)

    async def _build_ring(self, now: datetime) -> KeyRing:
        keys = await self._load_descriptors()
        default = KeyRing.select_default(keys, now)
        generated = False

        if self._options.auto_generate_keys and self._needs_new_key(default, keys, now):
            activation = now if default is None else default.expiration_time
            try:
                await self._generate(activation, None, now=now)
            except KeyGenerationError as e:
                if default is None:
                    raise
                # The current default stays valid; retry the successor soon.
                logger.error("Could not generate successor for key %s: %s", default.key_id, e)
                return KeyRing(keys, default, now + self._options.fallback_retry_period)
            generated = True
            keys = await self._load_descriptors()
            default = KeyRing.select_default(keys, now)

        expires_at = self._next_refresh(keys, default, now, generated)
        ring = KeyRing(keys, default, expires_at)
        logger.debug("Key ring refreshed: %r, next refresh %s", ring, expires_at.isoformat())
        return ring

    def _needs_new_key(
        self, default: Optional[KeyDescriptor], keys: Iterable[KeyDescriptor], now: datetime
    ) -> bool:
        if default is None:
            return True
        if default.expiration_time - now > self._options.rotation_threshold:
            return False
        for key in keys:
            if key.key_id == default.key_id or key.revoked or not key.is_usable:
                continue
            if key.activation_time <= default.expiration_time < key.expiration_time:
                return False
        return True

    def _next_refresh(
        self,
        keys: Iterable[KeyDescriptor],
        default: Optional[KeyDescriptor],
        now: datetime,
        generated: bool,
    ) -> datetime:
        period = self._options.refresh_period
        if generated:
            # Pick up keys generated concurrently by other processes soon.
            period = min(period, self._options.post_generation_refresh)
        expires_at = now + period
        if default is not None:
            expires_at = min(expires_at, default.expiration_time)
            if default.expiration_time - self._options.rotation_threshold > now:
                expires_at = min(expires_at, default.expiration_time - self._options.rotation_threshold)
        for key in keys:
            if key.activation_time > now:
                expires_at = min(expires_at, key.activation_time)
        return expires_at

    async def _load_descriptors(self) -> List[KeyDescriptor]:
        records = await self._with_retries("load", self._repository.load_all)
        previous = self._ring
        descriptors = []
        for record in records:
            cached = previous.get(record.key_id) if previous is not None else None
            try:
                descriptors.append(await self._to_descriptor(record, cached))
            except InvalidKeyStateError as e:
                logger.warning("Skipping invalid key record %s: %s", record.key_id, e)
        return descriptors

    async def _to_descriptor(
        self, record: KeyRecord, cached: Optional[KeyDescriptor]
    ) -> KeyDescriptor:
        master_key: Optional[SecureKey] = None
        unwrap_error: Optional[str] = None

        if cached is not None and cached.master_key is not None:
            master_key = cached.master_key
        else:
            unwrapper = self._unwrappers.get(record.protector)
            if unwrapper is None:
                unwrap_error = f"No key protector named {record.protector!r}"
            else:
                try:
                    material = await asyncio.to_thread(
                        unwrapper.unwrap, record.wrapped_key, record.protector_info
                    )
                    master_key = SecureKey(material)
                except KeyUnwrapError as e:
                    unwrap_error = str(e)
            if unwrap_error is not None:
                logger.warning("Key %s is unusable: %s", record.key_id, unwrap_error)

        return KeyDescriptor(
            key_id=record.key_id,
            creation_time=record.creation_time,
            activation_time=record.activation_time,
            expiration_time=record.expiration_time,
            algorithm=record.algorithm,
            master_key=master_key,
            revoked=record.revoked,
            revocation_reason=record.revocation_reason,
            unwrap_error=unwrap_error,
        )

    async def _generate(
        self,
        activation_time: Optional[datetime],
        expiration_time: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> KeyDescriptor:
        now = now or self.now()
        activation = activation_time or now
        expiration = expiration_time or activation + self._options.key_lifetime
        # Snapshot: later set_algorithm calls never reach this key.
        algorithm = self._algorithm
        material = SecureKey.generate()

        try:
            descriptor = KeyDescriptor(
                key_id=uuid4(),
                creation_time=now,
                activation_time=activation,
                expiration_time=expiration,
                algorithm=algorithm,
                master_key=material,
            )
        except InvalidKeyStateError as e:
            raise KeyGenerationError(str(e))

        try:
            wrapped = await asyncio.to_thread(self._protector.wrap, material.as_bytes())
        except CryptoError as e:
            raise KeyGenerationError(f"Failed to wrap new key: {e}")

        record = KeyRecord(
            key_id=descriptor.key_id,
            creation_time=descriptor.creation_time,
            activation_time=descriptor.activation_time,
            expiration_time=descriptor.expiration_time,
            algorithm=algorithm,
            protector=self._protector.name,
            protector_info=wrapped.info,
            wrapped_key=wrapped.blob,
        )
        try:
            await self._with_retries("save", lambda: self._repository.save(record))
        except StorageError as e:
            raise KeyGenerationError(f"Failed to persist new key {descriptor.key_id}: {e}")

        logger.info(
            "Created key %s (activation %s, expiration %s, %s)",
            descriptor.key_id,
            activation.isoformat(),
            expiration.isoformat(),
            algorithm,
        )
        return descriptor

    async def _with_retries(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        delay = self._options.retry_backoff
        attempt = 0
        while True:
            try:
                return await func()
            except StorageError as e:
                attempt += 1
                if attempt > self._options.io_retries:
                    raise
                logger.warning(
                    "Key repository %s failed (attempt %d/%d): %s",
                    operation,
                    attempt,
                    self._options.io_retries + 1,
                    e,
                )
                await asyncio.sleep(delay)
                delay *= 2
