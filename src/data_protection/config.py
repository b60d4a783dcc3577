"""
Startup configuration.

Options are read from the environment (optionally a ``.env`` file loaded
with python-dotenv) and composed into a DataProtectionProvider. Any
configuration problem raises ConfigError before a provider exists.

Environment variables:
    DP_APPLICATION_NAME          Application discriminator ("" by default)
    DP_KEY_LIFETIME_DAYS         Key lifetime in days (90)
    DP_STORAGE                   memory | filesystem | postgres
    DP_KEY_DIRECTORY             Key directory for filesystem storage
    DATABASE_URL                 PostgreSQL DSN for postgres storage
    DP_PROTECTOR                 local | certificate | vault
    DP_LOCAL_SECRET              Secret for the local protector
    DP_CERTIFICATE_PATH          PEM certificate for the certificate protector
    DP_PRIVATE_KEY_PATH          PEM private key (optional, needed to read keys)
    DP_PRIVATE_KEY_PASSWORD      Private key password (optional)
    DP_VAULT_URL / DP_VAULT_TOKEN / DP_VAULT_KEY_NAME
                                 Vault transit protector settings
    DP_ENCRYPTION_ALGORITHM      AES_256_CBC (default), AES_128_GCM, ...
    DP_VALIDATION_ALGORITHM      HMACSHA256 (default) | HMACSHA512
    DP_ALLOW_REVOKED_DECRYPTION  true | false (false)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional, Union

import asyncpg
from dotenv import load_dotenv

from .algorithms import AlgorithmConfiguration, EncryptionAlgorithm, ValidationAlgorithm
from .errors import ConfigError, SerializationError, StorageError
from .key_manager import KeyManagementOptions, KeyManager
from .postgres_storage import PostgresKeyRepository
from .protectors import (
    CertificateKeyProtector,
    KeyProtector,
    LocalSecretKeyProtector,
    VaultTransitKeyProtector,
)
from .provider import DataProtectionProvider
from .storage import FileSystemKeyRepository, InMemoryKeyRepository, KeyRepository

STORAGE_BACKENDS = ("memory", "filesystem", "postgres")
PROTECTOR_BACKENDS = ("local", "certificate", "vault")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


@dataclass
class DataProtectionOptions:
    """Everything needed to compose a DataProtectionProvider."""

    application_name: str = ""
    key_lifetime_days: int = 90
    storage: str = "memory"
    key_directory: Optional[str] = None
    database_url: Optional[str] = None
    protector: str = "local"
    local_secret: Optional[str] = None
    certificate_path: Optional[str] = None
    private_key_path: Optional[str] = None
    private_key_password: Optional[str] = None
    vault_url: Optional[str] = None
    vault_token: Optional[str] = None
    vault_key_name: Optional[str] = None
    encryption_algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_CBC
    validation_algorithm: ValidationAlgorithm = ValidationAlgorithm.HMACSHA256
    allow_revoked_decryption: bool = False

    @classmethod
    def from_env(
        cls,
        env_file: Union[str, Path, None] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> DataProtectionOptions:
        """
        Read options from the environment.

        Args:
            env_file: ``.env`` file to load first (python-dotenv's lookup if None)
            environ: Mapping to read instead of ``os.environ`` (no .env loading)

        Raises:
            ConfigError: If a value cannot be parsed
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        def get(name: str) -> Optional[str]:
            value = environ.get(name)
            return value if value else None

        try:
            lifetime = int(environ.get("DP_KEY_LIFETIME_DAYS", "90"))
        except ValueError:
            raise ConfigError("DP_KEY_LIFETIME_DAYS must be an integer")

        try:
            encryption = EncryptionAlgorithm.from_str(
                environ.get("DP_ENCRYPTION_ALGORITHM", "AES_256_CBC")
            )
            validation = ValidationAlgorithm.from_str(
                environ.get("DP_VALIDATION_ALGORITHM", "HMACSHA256")
            )
        except SerializationError as e:
            raise ConfigError(str(e))

        return cls(
            application_name=environ.get("DP_APPLICATION_NAME", ""),
            key_lifetime_days=lifetime,
            storage=environ.get("DP_STORAGE", "memory").lower(),
            key_directory=get("DP_KEY_DIRECTORY"),
            database_url=get("DATABASE_URL"),
            protector=environ.get("DP_PROTECTOR", "local").lower(),
            local_secret=get("DP_LOCAL_SECRET"),
            certificate_path=get("DP_CERTIFICATE_PATH"),
            private_key_path=get("DP_PRIVATE_KEY_PATH"),
            private_key_password=get("DP_PRIVATE_KEY_PASSWORD"),
            vault_url=get("DP_VAULT_URL"),
            vault_token=get("DP_VAULT_TOKEN"),
            vault_key_name=get("DP_VAULT_KEY_NAME"),
            encryption_algorithm=encryption,
            validation_algorithm=validation,
            allow_revoked_decryption=_parse_bool(
                "DP_ALLOW_REVOKED_DECRYPTION", environ.get("DP_ALLOW_REVOKED_DECRYPTION", "")
            ),
        )

    def validate(self) -> None:
        """
        Check cross-field requirements.

        Raises:
            ConfigError: On the first problem found
        """
        if self.key_lifetime_days < 7:
            raise ConfigError("Key lifetime must be at least 7 days")
        if self.storage not in STORAGE_BACKENDS:
            raise ConfigError(f"Unknown storage backend {self.storage!r}")
        if self.storage == "filesystem" and not self.key_directory:
            raise ConfigError("Filesystem storage requires DP_KEY_DIRECTORY")
        if self.protector not in PROTECTOR_BACKENDS:
            raise ConfigError(f"Unknown key protector {self.protector!r}")
        if self.protector == "local" and not self.local_secret:
            raise ConfigError("Local key protector requires DP_LOCAL_SECRET")
        if self.protector == "certificate" and not self.certificate_path:
            raise ConfigError("Certificate key protector requires DP_CERTIFICATE_PATH")
        if self.protector == "vault" and not (
            self.vault_url and self.vault_token and self.vault_key_name
        ):
            raise ConfigError(
                "Vault key protector requires DP_VAULT_URL, DP_VAULT_TOKEN and DP_VAULT_KEY_NAME"
            )

    @property
    def algorithm(self) -> AlgorithmConfiguration:
        return AlgorithmConfiguration(self.encryption_algorithm, self.validation_algorithm)

    def key_management_options(self) -> KeyManagementOptions:
        return KeyManagementOptions(
            key_lifetime=timedelta(days=self.key_lifetime_days),
            allow_revoked_decryption=self.allow_revoked_decryption,
            algorithm=self.algorithm,
        )

    def build_protector(self) -> KeyProtector:
        """Create the configured key protector (validates first)."""
        self.validate()
        if self.protector == "certificate":
            return CertificateKeyProtector.from_files(
                self.certificate_path, self.private_key_path, self.private_key_password
            )
        if self.protector == "vault":
            return VaultTransitKeyProtector.from_url(
                self.vault_url, self.vault_token, self.vault_key_name
            )
        return LocalSecretKeyProtector(self.local_secret)


async def build_repository(
    options: DataProtectionOptions, pool: Optional[asyncpg.Pool] = None
) -> KeyRepository:
    """
    Create the configured key repository.

    Args:
        options: Validated options
        pool: Existing asyncpg pool for postgres storage (created from
            ``database_url`` when omitted)

    Raises:
        ConfigError: If postgres storage has neither a pool nor a DSN, the
            database is unreachable or the key table cannot be created
    """
    if options.storage == "filesystem":
        return FileSystemKeyRepository(options.key_directory)
    if options.storage == "postgres":
        owns_pool = pool is None
        if owns_pool:
            if not options.database_url:
                raise ConfigError("Postgres storage requires DATABASE_URL")
            try:
                pool = await asyncpg.create_pool(options.database_url)
            except (OSError, asyncpg.PostgresError) as e:
                raise ConfigError(f"Cannot connect to PostgreSQL: {e}")
        repository = PostgresKeyRepository(pool)
        try:
            await repository.ensure_schema()
        except StorageError as e:
            if owns_pool:
                await pool.close()
            raise ConfigError(f"Cannot prepare PostgreSQL key table: {e}")
        return repository
    return InMemoryKeyRepository()


async def build_provider(
    options: DataProtectionOptions, pool: Optional[asyncpg.Pool] = None
) -> DataProtectionProvider:
    """
    Compose repository, key protector and key manager into a provider.

    Raises:
        ConfigError: If the configuration is invalid; no provider is returned
    """
    protector = options.build_protector()
    repository = await build_repository(options, pool)
    manager = KeyManager(repository, protector, options.key_management_options())
    return DataProtectionProvider(manager, options.application_name)
