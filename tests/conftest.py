"""
Pytest configuration and fixtures for data protection tests.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncGenerator, Tuple

import asyncpg
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from dotenv import load_dotenv

from data_protection import (
    DataProtectionProvider,
    InMemoryKeyRepository,
    KeyManagementOptions,
    KeyManager,
    LocalSecretKeyProtector,
    StorageError,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta) -> datetime:
        self.current += delta
        return self.current


class FlakyRepository(InMemoryKeyRepository):
    """In-memory repository that fails the next N loads or saves."""

    def __init__(self) -> None:
        super().__init__()
        self.load_failures = 0
        self.save_failures = 0
        self.load_calls = 0

    async def load_all(self):
        self.load_calls += 1
        if self.load_failures > 0:
            self.load_failures -= 1
            raise StorageError("repository offline")
        return await super().load_all()

    async def save(self, record):
        if self.save_failures > 0:
            self.save_failures -= 1
            raise StorageError("repository read-only")
        await super().save(record)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_repository() -> InMemoryKeyRepository:
    """Create an in-memory key repository for testing."""
    return InMemoryKeyRepository()


@pytest.fixture
def flaky_repository() -> FlakyRepository:
    return FlakyRepository()


@pytest.fixture
def local_protector() -> LocalSecretKeyProtector:
    return LocalSecretKeyProtector("test-secret")


@pytest.fixture
def options() -> KeyManagementOptions:
    return KeyManagementOptions(io_retries=0, retry_backoff=0)


@pytest.fixture
def manager(
    memory_repository: InMemoryKeyRepository,
    local_protector: LocalSecretKeyProtector,
    options: KeyManagementOptions,
    clock: FakeClock,
) -> KeyManager:
    return KeyManager(memory_repository, local_protector, options, clock=clock)


@pytest.fixture
def provider(manager: KeyManager) -> DataProtectionProvider:
    return DataProtectionProvider(manager, "App")


@pytest.fixture(scope="session")
def rsa_certificate() -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """Self-signed RSA certificate and its private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "data-protection-test")])
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return certificate, key


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    yield pool

    await pool.close()
