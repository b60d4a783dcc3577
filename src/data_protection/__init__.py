"""
Data Protection Library

Purpose-scoped authenticated encryption with an automatically rotated key ring.

Overview
--------
- **Master keys** are random 512-bit keys with an activation and expiration
  time; the key ring picks one default key for new payloads
- **Key protectors** wrap master keys before they reach storage (local secret,
  X.509 certificate or HashiCorp Vault transit)
- **Data protectors** encrypt and authenticate payloads under subkeys derived
  from the default key, the application name and a purpose chain; a payload
  protected for one purpose cannot be read through another

Quick Start
-----------
```python
import asyncio
from data_protection import DataProtectionOptions, build_provider

async def main():
    options = DataProtectionOptions(
        application_name="App",
        storage="filesystem",
        key_directory="/var/lib/app/keys",
        local_secret="change-me",
    )
    provider = await build_provider(options)
    cookies = provider.create_protector("Cookies")

    token = await cookies.protect(b"session=42")
    assert await cookies.unprotect(token) == b"session=42"

asyncio.run(main())
```

Key Features
------------
- **Encrypt-then-MAC**: AES-CBC + HMAC-SHA256/512, or AES-GCM
- **SP800-108 subkeys**: Per payload-context encryption and validation keys
- **Time-based rotation**: Successor keys are created before the default expires
- **Revocation**: Single keys or every key created before a date
- **Storage**: In-memory, file system (atomic writes) or PostgreSQL

Modules
-------
- `provider`: DataProtectionProvider / DataProtector facade
- `key_manager`: Key ring construction, caching and rotation
- `keys`: Key descriptors, stored key records and the key ring
- `storage`: Repository interface, in-memory and file system backends
- `postgres_storage`: PostgreSQL backend
- `protectors`: At-rest key protectors
- `crypto`: Authenticated encryptors and AES-GCM primitives
- `kdf`: SP800-108 subkey derivation
- `context`: Payload header build and validation
- `config`: Environment configuration and provider composition
- `errors`: Error types and exception classes
"""

__version__ = "0.1.0"

# ============================================================================
# Algorithm Exports
# ============================================================================

from .algorithms import (
    AlgorithmConfiguration,
    EncryptionAlgorithm,
    ValidationAlgorithm,
)

# ============================================================================
# Crypto Exports
# ============================================================================

from .crypto import (
    MASTER_KEY_SIZE,
    AuthenticatedEncryptor,
    CbcHmacEncryptor,
    EncryptedPayload,
    GcmEncryptor,
    SecureKey,
    create_encryptor,
    generate_random_bytes,
)
from .kdf import SubkeyDeriver
from .context import HEADER_SIZE, ContextHeader

# ============================================================================
# Error Exports
# ============================================================================

from .errors import (
    ConfigError,
    CryptoError,
    DataProtectionError,
    HeaderValidationError,
    InvalidKeyStateError,
    KeyGenerationError,
    KeyNotFoundError,
    KeyUnwrapError,
    SerializationError,
    StorageError,
    UnprotectError,
)

# ============================================================================
# Key Ring Exports
# ============================================================================

from .keys import KeyDescriptor, KeyRecord, KeyRing
from .key_manager import KeyManagementOptions, KeyManager

# ============================================================================
# Storage and Protector Exports
# ============================================================================

from .storage import FileSystemKeyRepository, InMemoryKeyRepository, KeyRepository
from .postgres_storage import PostgresKeyRepository
from .protectors import (
    CertificateKeyProtector,
    KeyProtector,
    LocalSecretKeyProtector,
    VaultTransitKeyProtector,
    WrappedKey,
)

# ============================================================================
# Facade Exports (Primary API)
# ============================================================================

from .provider import (
    DataProtectionProvider,
    DataProtector,
    TimeLimitedDataProtector,
    UnprotectResult,
)
from .config import DataProtectionOptions, build_provider

# ============================================================================
# Public API
# ============================================================================

__all__ = [
    # Version
    "__version__",
    # Algorithms
    "AlgorithmConfiguration",
    "EncryptionAlgorithm",
    "ValidationAlgorithm",
    # Crypto
    "MASTER_KEY_SIZE",
    "AuthenticatedEncryptor",
    "CbcHmacEncryptor",
    "GcmEncryptor",
    "EncryptedPayload",
    "SecureKey",
    "create_encryptor",
    "generate_random_bytes",
    "SubkeyDeriver",
    "HEADER_SIZE",
    "ContextHeader",
    # Errors
    "DataProtectionError",
    "CryptoError",
    "KeyNotFoundError",
    "InvalidKeyStateError",
    "StorageError",
    "SerializationError",
    "KeyGenerationError",
    "KeyUnwrapError",
    "HeaderValidationError",
    "ConfigError",
    "UnprotectError",
    # Key ring
    "KeyDescriptor",
    "KeyRecord",
    "KeyRing",
    "KeyManagementOptions",
    "KeyManager",
    # Storage
    "KeyRepository",
    "InMemoryKeyRepository",
    "FileSystemKeyRepository",
    "PostgresKeyRepository",
    # Protectors
    "KeyProtector",
    "WrappedKey",
    "LocalSecretKeyProtector",
    "CertificateKeyProtector",
    "VaultTransitKeyProtector",
    # Facade (Primary API)
    "DataProtectionProvider",
    "DataProtector",
    "TimeLimitedDataProtector",
    "UnprotectResult",
    "DataProtectionOptions",
    "build_provider",
]
