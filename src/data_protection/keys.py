"""
Key descriptors, persisted key records and the key ring snapshot.

This module provides:
- KeyDescriptor: Immutable in-memory view of one key (plaintext material)
- KeyRecord: Persisted form of one key (wrapped material only)
- KeyRing: Immutable snapshot of all known keys plus the default key

Lifecycle:
created (KeyManager) -> persisted as a KeyRecord -> loaded into a KeyRing ->
default while activated, unexpired and unrevoked -> kept for decryption.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional
from uuid import UUID

from .algorithms import AlgorithmConfiguration
from .crypto import SecureKey
from .errors import InvalidKeyStateError, SerializationError

RECORD_VERSION = 1


def _require_aware(name: str, value: datetime) -> None:
    if value.tzinfo is None:
        raise InvalidKeyStateError(f"{name} must be timezone-aware")


@dataclass(frozen=True)
class KeyDescriptor:
    """
    One key of the ring.

    ``algorithm`` is the configuration captured when the key was created.
    ``master_key`` is None when the stored material could not be unwrapped;
    ``unwrap_error`` then says why.
    """

    key_id: UUID
    creation_time: datetime
    activation_time: datetime
    expiration_time: datetime
    algorithm: AlgorithmConfiguration
    master_key: Optional[SecureKey] = field(default=None, repr=False, compare=False)
    revoked: bool = False
    revocation_reason: Optional[str] = None
    unwrap_error: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        _require_aware("creation_time", self.creation_time)
        _require_aware("activation_time", self.activation_time)
        _require_aware("expiration_time", self.expiration_time)
        if self.activation_time > self.expiration_time:
            raise InvalidKeyStateError(
                f"Key {self.key_id}: activation_time is after expiration_time"
            )

    @property
    def is_usable(self) -> bool:
        """True when the plaintext master key is available."""
        return self.master_key is not None

    def is_activated(self, now: datetime) -> bool:
        return self.activation_time <= now

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expiration_time

    def revoke(self, reason: Optional[str] = None) -> KeyDescriptor:
        """Return a revoked copy of this descriptor."""
        return replace(self, revoked=True, revocation_reason=reason)


def _dt_to_str(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _dt_from_str(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class KeyRecord:
    """
    Stored key (wrapped by a key protector).

    ``wrapped_key`` is the protector's opaque blob; ``protector`` names the
    protector that produced it and ``protector_info`` carries whatever it
    needs to unwrap (certificate thumbprint, vault key name, ...).
    """

    key_id: UUID
    creation_time: datetime
    activation_time: datetime
    expiration_time: datetime
    algorithm: AlgorithmConfiguration
    protector: str
    wrapped_key: bytes = field(repr=False)
    protector_info: Dict[str, str] = field(default_factory=dict)
    revoked: bool = False
    revocation_reason: Optional[str] = None

    def with_revocation(self, reason: Optional[str] = None) -> KeyRecord:
        return replace(self, revoked=True, revocation_reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": RECORD_VERSION,
            "id": str(self.key_id),
            "creation_time": _dt_to_str(self.creation_time),
            "activation_time": _dt_to_str(self.activation_time),
            "expiration_time": _dt_to_str(self.expiration_time),
            "algorithm": self.algorithm.to_dict(),
            "revoked": self.revoked,
            "revocation_reason": self.revocation_reason,
            "protector": self.protector,
            "protector_info": dict(self.protector_info),
            "wrapped_key": base64.standard_b64encode(self.wrapped_key).decode("ascii"),
        }

    def to_json(self) -> str:
        """Serialize record to JSON string."""
        try:
            return json.dumps(self.to_dict(), indent=2, sort_keys=True)
        except Exception as e:
            raise SerializationError(f"Failed to serialize key record: {e}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> KeyRecord:
        """
        Parse a stored record. Unknown fields are ignored.

        Raises:
            SerializationError: If a required field is missing or malformed
        """
        try:
            version = int(data.get("version", RECORD_VERSION))
            if version > RECORD_VERSION:
                raise SerializationError(f"Unsupported key record version {version}")
            record = cls(
                key_id=UUID(data["id"]),
                creation_time=_dt_from_str(data["creation_time"]),
                activation_time=_dt_from_str(data["activation_time"]),
                expiration_time=_dt_from_str(data["expiration_time"]),
                algorithm=AlgorithmConfiguration.from_dict(data["algorithm"]),
                protector=str(data["protector"]),
                protector_info={
                    str(k): str(v) for k, v in (data.get("protector_info") or {}).items()
                },
                wrapped_key=base64.standard_b64decode(data["wrapped_key"]),
                revoked=bool(data.get("revoked", False)),
                revocation_reason=data.get("revocation_reason"),
            )
        except SerializationError:
            raise
        except Exception as e:
            raise SerializationError(f"Failed to deserialize key record: {e}")
        if record.activation_time > record.expiration_time:
            raise SerializationError(
                f"Key record {record.key_id}: activation_time is after expiration_time"
            )
        return record

    @classmethod
    def from_json(cls, json_str: str | bytes) -> KeyRecord:
        """Deserialize record from JSON string."""
        try:
            data = json.loads(json_str)
        except ValueError as e:
            raise SerializationError(f"Failed to deserialize key record: {e}")
        if not isinstance(data, dict):
            raise SerializationError("Key record must be a JSON object")
        return cls.from_dict(data)


class KeyRing:
    """
    Immutable snapshot of the known keys.

    The key manager builds a new ring on every refresh and swaps it in by
    reference; a ring is never modified after construction.
    """

    __slots__ = ("_keys", "_default_key", "_expires_at")

    def __init__(
        self,
        keys: Iterable[KeyDescriptor],
        default_key: Optional[KeyDescriptor],
        expires_at: datetime,
    ) -> None:
        self._keys: Mapping[UUID, KeyDescriptor] = MappingProxyType(
            {key.key_id: key for key in keys}
        )
        self._default_key = default_key
        self._expires_at = expires_at

    @property
    def keys(self) -> Mapping[UUID, KeyDescriptor]:
        return self._keys

    @property
    def default_key(self) -> Optional[KeyDescriptor]:
        return self._default_key

    @property
    def expires_at(self) -> datetime:
        """When this snapshot should be re-read from the repository."""
        return self._expires_at

    def get(self, key_id: UUID) -> Optional[KeyDescriptor]:
        return self._keys.get(key_id)

    def is_fresh(self, now: datetime) -> bool:
        return now < self._expires_at

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key_id: object) -> bool:
        return key_id in self._keys

    def __repr__(self) -> str:
        default = self._default_key.key_id if self._default_key else None
        return f"KeyRing(keys={len(self._keys)}, default={default})"

    @staticmethod
    def select_default(
        keys: Iterable[KeyDescriptor], now: datetime
    ) -> Optional[KeyDescriptor]:
        """
        Pick the default key: activated, unexpired, unrevoked and usable,
        with the greatest (activation_time, creation_time, key_id).

        Ties break on the key id so that every process reading the same
        repository picks the same key.
        """
        candidates = [
            key
            for key in keys
            if key.is_activated(now)
            and not key.is_expired(now)
            and not key.revoked
            and key.is_usable
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda k: (k.activation_time, k.creation_time, k.key_id.bytes),
        )
