"""
Cryptographic primitives for the protection engine.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- EncryptedData / AesGcmCipher: AES-256-GCM used to wrap master keys at rest
- AuthenticatedEncryptor: payload encryption under per-payload subkeys
  - CbcHmacEncryptor: AES-CBC then HMAC (encrypt-then-MAC)
  - GcmEncryptor: AES-GCM with the payload header as AAD
"""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .algorithms import AlgorithmConfiguration
from .errors import CryptoError
from .kdf import ENCRYPTION_LABEL, SubkeyDeriver

# Cryptographic constants
MASTER_KEY_SIZE: int = 64  # 512 bits, input to the subkey KDF
AES_256_KEY_SIZE: int = 32  # 256 bits
AES_BLOCK_SIZE: int = 16
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (GCM authentication tag)


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise CryptoError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls, size: int = MASTER_KEY_SIZE) -> SecureKey:
        """Generate a cryptographically secure random key (64 bytes by default)."""
        return cls(secrets.token_bytes(size))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


# =============================================================================
# At-rest wrapping primitives
# =============================================================================


@dataclass
class EncryptedData:
    """
    Encrypted data container with nonce and ciphertext.

    The ciphertext includes the 16-byte authentication tag appended by AESGCM.
    """

    nonce: bytes  # 12 bytes
    ciphertext: bytes  # Ciphertext + 16-byte auth tag

    def to_aead_blob(self) -> bytes:
        """Convert to AEAD blob format: nonce || ciphertext || tag."""
        return self.nonce + self.ciphertext

    @classmethod
    def from_aead_blob(cls, blob: bytes) -> EncryptedData:
        """
        Parse from AEAD blob format: nonce || ciphertext || tag.

        Raises:
            CryptoError: If blob is too small
        """
        min_size = NONCE_SIZE + TAG_SIZE
        if len(blob) < min_size:
            raise CryptoError(
                f"AEAD blob too small: expected at least {min_size} bytes, got {len(blob)}"
            )
        return cls(nonce=blob[:NONCE_SIZE], ciphertext=blob[NONCE_SIZE:])


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Static helpers with optional Additional Authenticated Data (AAD) for
    binding; the key protectors use them to wrap master keys.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        aad: Optional[bytes] = None,
    ) -> EncryptedData:
        """
        Encrypt plaintext with AES-256-GCM.

        Raises:
            CryptoError: If key size is invalid or encryption fails
        """
        if len(key) != AES_256_KEY_SIZE:
            raise CryptoError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
            )

        nonce = secrets.token_bytes(NONCE_SIZE)
        aesgcm = AESGCM(key.as_bytes())

        try:
            ciphertext = aesgcm.encrypt(nonce, plaintext, aad)
        except Exception as e:
            raise CryptoError(f"Encryption error: {e}")

        return EncryptedData(nonce=nonce, ciphertext=ciphertext)

    @staticmethod
    def decrypt(
        key: SecureKey,
        encrypted: EncryptedData,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt ciphertext with AES-256-GCM.

        Raises:
            CryptoError: If key/nonce size is invalid or decryption fails
        """
        if len(key) != AES_256_KEY_SIZE:
            raise CryptoError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
            )

        if len(encrypted.nonce) != NONCE_SIZE:
            raise CryptoError(
                f"Invalid nonce size: expected {NONCE_SIZE}, got {len(encrypted.nonce)}"
            )

        aesgcm = AESGCM(key.as_bytes())

        try:
            return aesgcm.decrypt(encrypted.nonce, encrypted.ciphertext, aad)
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise CryptoError("Decryption failed")


def generate_random_bytes(length: int) -> bytes:
    """Generate cryptographically secure random bytes."""
    return secrets.token_bytes(length)


# =============================================================================
# Payload encryptors
# =============================================================================


@dataclass(frozen=True)
class EncryptedPayload:
    """Body of a protected payload: iv || ciphertext || tag."""

    iv: bytes
    ciphertext: bytes
    tag: bytes

    def to_bytes(self) -> bytes:
        return self.iv + self.ciphertext + self.tag


class AuthenticatedEncryptor(ABC):
    """
    Encrypts and authenticates payload bodies with subkeys derived from a
    master key. The associated data (the payload header) is mandatory and
    doubles as the KDF context.
    """

    iv_size: int
    min_ciphertext_size: int = 0

    def __init__(self, config: AlgorithmConfiguration) -> None:
        self._config = config

    @property
    def config(self) -> AlgorithmConfiguration:
        return self._config

    @property
    @abstractmethod
    def tag_size(self) -> int:
        ...

    @abstractmethod
    def encrypt(
        self, plaintext: bytes, master_key: SecureKey, associated_data: bytes
    ) -> EncryptedPayload:
        """Encrypt under a fresh random IV."""
        ...

    @abstractmethod
    def decrypt(
        self, payload: EncryptedPayload, master_key: SecureKey, associated_data: bytes
    ) -> bytes:
        """
        Verify then decrypt.

        Raises:
            CryptoError: "Decryption failed" for every failure cause
        """
        ...

    def parse(self, body: bytes) -> EncryptedPayload:
        """
        Split a payload body using this algorithm's IV and tag sizes.

        Raises:
            CryptoError: If the body is too short
        """
        if len(body) < self.iv_size + self.min_ciphertext_size + self.tag_size:
            raise CryptoError("Decryption failed")
        tag_start = len(body) - self.tag_size
        return EncryptedPayload(
            iv=body[: self.iv_size],
            ciphertext=body[self.iv_size : tag_start],
            tag=body[tag_start:],
        )


class CbcHmacEncryptor(AuthenticatedEncryptor):
    """AES-CBC with PKCS7 padding, then HMAC over aad || iv || ciphertext."""

    iv_size = AES_BLOCK_SIZE
    min_ciphertext_size = AES_BLOCK_SIZE

    @property
    def tag_size(self) -> int:
        return self._config.validation.tag_size

    def encrypt(
        self, plaintext: bytes, master_key: SecureKey, associated_data: bytes
    ) -> EncryptedPayload:
        enc_key, mac_key = self._subkeys(master_key, associated_data)
        iv = secrets.token_bytes(AES_BLOCK_SIZE)

        padder = padding.PKCS7(AES_BLOCK_SIZE * 8).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        mac = self._mac(mac_key, associated_data, iv, ciphertext)
        return EncryptedPayload(iv=iv, ciphertext=ciphertext, tag=mac.finalize())

    def decrypt(
        self, payload: EncryptedPayload, master_key: SecureKey, associated_data: bytes
    ) -> bytes:
        enc_key, mac_key = self._subkeys(master_key, associated_data)

        mac = self._mac(mac_key, associated_data, payload.iv, payload.ciphertext)
        try:
            mac.verify(payload.tag)
        except InvalidSignature:
            raise CryptoError("Decryption failed")

        # The cipher is only reached with an authentic body.
        try:
            decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(payload.iv)).decryptor()
            padded = decryptor.update(payload.ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(AES_BLOCK_SIZE * 8).unpadder()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            raise CryptoError("Decryption failed")

    def _subkeys(self, master_key: SecureKey, associated_data: bytes) -> Tuple[bytes, bytes]:
        return SubkeyDeriver.derive_pair(
            master_key.as_bytes(),
            associated_data,
            self._config.encryption.key_size,
            self._config.validation.key_size,
        )

    def _mac(self, mac_key: bytes, aad: bytes, iv: bytes, ciphertext: bytes) -> hmac.HMAC:
        mac = hmac.HMAC(mac_key, self._config.validation.hash_algorithm())
        mac.update(aad)
        mac.update(iv)
        mac.update(ciphertext)
        return mac


class GcmEncryptor(AuthenticatedEncryptor):
    """AES-GCM under the derived encryption subkey, header as AAD."""

    iv_size = NONCE_SIZE

    @property
    def tag_size(self) -> int:
        return TAG_SIZE

    def encrypt(
        self, plaintext: bytes, master_key: SecureKey, associated_data: bytes
    ) -> EncryptedPayload:
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(self._subkey(master_key, associated_data)).encrypt(
            nonce, plaintext, associated_data
        )
        return EncryptedPayload(iv=nonce, ciphertext=sealed[:-TAG_SIZE], tag=sealed[-TAG_SIZE:])

    def decrypt(
        self, payload: EncryptedPayload, master_key: SecureKey, associated_data: bytes
    ) -> bytes:
        aesgcm = AESGCM(self._subkey(master_key, associated_data))
        try:
            return aesgcm.decrypt(payload.iv, payload.ciphertext + payload.tag, associated_data)
        except (InvalidTag, ValueError):
            raise CryptoError("Decryption failed")

    def _subkey(self, master_key: SecureKey, associated_data: bytes) -> bytes:
        return SubkeyDeriver.derive(
            master_key.as_bytes(),
            ENCRYPTION_LABEL,
            associated_data,
            self._config.encryption.key_size,
        )


def create_encryptor(config: AlgorithmConfiguration) -> AuthenticatedEncryptor:
    """Return the encryptor variant for a key's algorithm configuration."""
    if config.encryption.is_aead:
        return GcmEncryptor(config)
    return CbcHmacEncryptor(config)
