"""
Key repository abstractions.

This module provides:
- KeyRepository: Abstract interface for key record storage backends
- InMemoryKeyRepository: asyncio-safe in-memory implementation
- FileSystemKeyRepository: One JSON file per key in a directory

Repositories only ever see KeyRecord objects, i.e. wrapped key material.
Writes must be atomic per key: a reader observes either the old record or
the complete new one. There is no delete operation.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union
from uuid import UUID

from .errors import SerializationError, StorageError
from .keys import KeyRecord

logger = logging.getLogger(__name__)


class KeyRepository(ABC):
    """
    Abstract storage interface for key records.

    All methods are async to support both local and remote backends.
    """

    @abstractmethod
    async def save(self, record: KeyRecord) -> None:
        """Insert or replace one key record atomically."""
        ...

    @abstractmethod
    async def load_all(self) -> List[KeyRecord]:
        """Load every stored key record."""
        ...

    async def get(self, key_id: UUID) -> Optional[KeyRecord]:
        """Get one key record by ID."""
        for record in await self.load_all():
            if record.key_id == key_id:
                return record
        return None


class InMemoryKeyRepository(KeyRepository):
    """
    In-memory key repository for tests and ephemeral providers.

    Uses asyncio.Lock for safe concurrent access.
    """

    def __init__(self) -> None:
        self._records: Dict[UUID, KeyRecord] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: KeyRecord) -> None:
        async with self._lock:
            self._records[record.key_id] = record

    async def load_all(self) -> List[KeyRecord]:
        async with self._lock:
            return list(self._records.values())

    async def get(self, key_id: UUID) -> Optional[KeyRecord]:
        async with self._lock:
            return self._records.get(key_id)


class FileSystemKeyRepository(KeyRepository):
    """
    Directory of ``key-<uuid>.json`` files.

    Each save writes a temporary file in the same directory, fsyncs it and
    renames it over the target, so concurrent readers (other processes
    sharing the directory) never see a partial record. Files that cannot be
    parsed are skipped with a warning.
    """

    FILE_PREFIX = "key-"
    FILE_SUFFIX = ".json"

    def __init__(self, directory: Union[str, Path]) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, key_id: UUID) -> Path:
        return self._directory / f"{self.FILE_PREFIX}{key_id}{self.FILE_SUFFIX}"

    async def save(self, record: KeyRecord) -> None:
        payload = record.to_json()
        await asyncio.to_thread(self._write_atomic, self._path_for(record.key_id), payload)
        logger.debug("Wrote key record %s to %s", record.key_id, self._directory)

    async def load_all(self) -> List[KeyRecord]:
        return await asyncio.to_thread(self._read_all)

    async def get(self, key_id: UUID) -> Optional[KeyRecord]:
        return await asyncio.to_thread(self._read_one, self._path_for(key_id))

    def _write_atomic(self, path: Path, payload: str) -> None:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._directory, prefix=".tmp-", suffix=self.FILE_SUFFIX
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write key record {path.name}: {e}")

    def _read_all(self) -> List[KeyRecord]:
        if not self._directory.exists():
            return []
        try:
            paths = sorted(self._directory.glob(f"{self.FILE_PREFIX}*{self.FILE_SUFFIX}"))
        except OSError as e:
            raise StorageError(f"Failed to list key directory {self._directory}: {e}")

        records: List[KeyRecord] = []
        for path in paths:
            record = self._read_one(path)
            if record is not None:
                records.append(record)
        return records

    def _read_one(self, path: Path) -> Optional[KeyRecord]:
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Failed to read key record {path.name}: {e}")
        try:
            return KeyRecord.from_json(data)
        except SerializationError as e:
            logger.warning("Skipping unreadable key record %s: %s", path.name, e)
            return None
