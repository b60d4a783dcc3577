"""
PostgreSQL key repository.

This module provides:
- PostgresKeyRepository: asyncpg-backed storage for key records

Schema:
- One row per key in ``data_protection_keys``; the record itself is the
  JSON document produced by ``KeyRecord.to_json()`` (wrapped material only).
- Saves are single-statement upserts, so each key becomes visible atomically
  to every process sharing the database.
- Rows whose record cannot be parsed are skipped with a warning.
"""

from __future__ import annotations

import logging
from typing import List, Optional
from uuid import UUID

import asyncpg

from .errors import SerializationError, StorageError
from .keys import KeyRecord
from .storage import KeyRepository

DEFAULT_TABLE = "data_protection_keys"

logger = logging.getLogger(__name__)


class PostgresKeyRepository(KeyRepository):
    """PostgreSQL storage backend for key records."""

    def __init__(self, pool: asyncpg.Pool, table: str = DEFAULT_TABLE) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
            table: Table name (must be a plain SQL identifier)
        """
        if not table.replace("_", "").isalnum():
            raise StorageError(f"Invalid table name: {table}")
        self._pool = pool
        self._table = table

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    @property
    def table(self) -> str:
        return self._table

    async def ensure_schema(self) -> None:
        """Create the key table if it does not exist."""
        query = f"""
            CREATE TABLE IF NOT EXISTS {self._table} (
                key_id UUID PRIMARY KEY,
                record JSONB NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """
        try:
            await self._pool.execute(query)
        except Exception as e:
            raise StorageError(f"Failed to create key table: {e}")

    async def save(self, record: KeyRecord) -> None:
        """
        Insert or replace a key record.

        Args:
            record: KeyRecord to store
        """
        query = f"""
            INSERT INTO {self._table} (key_id, record, created_at)
            VALUES ($1, $2::jsonb, $3)
            ON CONFLICT (key_id) DO UPDATE
            SET record = EXCLUDED.record, updated_at = now()
        """
        try:
            await self._pool.execute(
                query,
                record.key_id,
                record.to_json(),
                record.creation_time,
            )
        except Exception as e:
            raise StorageError(f"Failed to store key {record.key_id}: {e}")

    async def load_all(self) -> List[KeyRecord]:
        """
        Load every key record.

        Returns:
            List of KeyRecord, oldest first
        """
        query = f"SELECT key_id, record::TEXT AS record FROM {self._table} ORDER BY created_at"
        try:
            rows = await self._pool.fetch(query)
        except Exception as e:
            raise StorageError(f"Failed to load keys: {e}")

        records: List[KeyRecord] = []
        for row in rows:
            record = self._row_to_record(row)
            if record is not None:
                records.append(record)
        return records

    async def get(self, key_id: UUID) -> Optional[KeyRecord]:
        """
        Get a key record by ID.

        Returns:
            KeyRecord if found and parseable, None otherwise
        """
        query = f"SELECT key_id, record::TEXT AS record FROM {self._table} WHERE key_id = $1"
        try:
            row = await self._pool.fetchrow(query, key_id)
        except Exception as e:
            raise StorageError(f"Failed to get key {key_id}: {e}")
        if row is None:
            return None
        return self._row_to_record(row)

    @staticmethod
    def _row_to_record(row: asyncpg.Record) -> Optional[KeyRecord]:
        """Convert database row to KeyRecord, or None if it cannot be parsed."""
        try:
            return KeyRecord.from_json(row["record"])
        except SerializationError as e:
            logger.warning("Skipping unreadable key record %s: %s", row["key_id"], e)
            return None
