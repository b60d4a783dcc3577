"""
At-rest key protectors.

This module provides:
- KeyProtector: Abstract interface that wraps/unwraps master key material
- LocalSecretKeyProtector: AES-256-GCM under a key derived from a local secret
- CertificateKeyProtector: RSA-OAEP (X.509 certificate) hybrid wrapping
- VaultTransitKeyProtector: HashiCorp Vault transit engine

Master keys only reach a KeyRepository after passing through ``wrap``.
"""

from __future__ import annotations

import base64
import hashlib
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

import hvac
import requests
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from hvac.exceptions import VaultError

from .crypto import AES_256_KEY_SIZE, AesGcmCipher, EncryptedData, SecureKey
from .errors import ConfigError, CryptoError, KeyUnwrapError


@dataclass(frozen=True)
class WrappedKey:
    """Output of KeyProtector.wrap: opaque blob plus unwrap hints."""

    blob: bytes = field(repr=False)
    info: Dict[str, str] = field(default_factory=dict)


class KeyProtector(ABC):
    """
    Wraps master key material for storage and unwraps it on load.

    Implementations are synchronous; the key manager runs them in a worker
    thread so remote backends do not block the event loop.
    """

    name: str

    @abstractmethod
    def wrap(self, plaintext_key: bytes) -> WrappedKey:
        """
        Wrap plaintext key material.

        Raises:
            CryptoError: If wrapping fails
        """
        ...

    @abstractmethod
    def unwrap(self, blob: bytes, info: Dict[str, str]) -> bytes:
        """
        Recover plaintext key material.

        Raises:
            KeyUnwrapError: If the blob cannot be unwrapped by this protector
        """
        ...


# =============================================================================
# Local secret
# =============================================================================


class LocalSecretKeyProtector(KeyProtector):
    """
    Wraps keys with AES-256-GCM under a key derived (HKDF-SHA256) from a
    machine- or deployment-local secret.
    """

    name = "local-secret"
    _HKDF_INFO = b"data_protection.local-secret.v1"

    def __init__(self, secret: Union[str, bytes]) -> None:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise ConfigError("Local secret must not be empty")
        derived = HKDF(
            algorithm=hashes.SHA256(),
            length=AES_256_KEY_SIZE,
            salt=None,
            info=self._HKDF_INFO,
        ).derive(secret)
        self._wrapping_key = SecureKey(derived)
        # Identifies the secret without revealing it.
        self._key_id = hashlib.sha256(derived).hexdigest()[:16]

    def wrap(self, plaintext_key: bytes) -> WrappedKey:
        encrypted = AesGcmCipher.encrypt(self._wrapping_key, plaintext_key, self.name.encode())
        return WrappedKey(blob=encrypted.to_aead_blob(), info={"secret_id": self._key_id})

    def unwrap(self, blob: bytes, info: Dict[str, str]) -> bytes:
        secret_id = info.get("secret_id")
        if secret_id is not None and secret_id != self._key_id:
            raise KeyUnwrapError(f"Key was wrapped with a different local secret ({secret_id})")
        try:
            return AesGcmCipher.decrypt(
                self._wrapping_key, EncryptedData.from_aead_blob(blob), self.name.encode()
            )
        except CryptoError as e:
            raise KeyUnwrapError(f"Local secret unwrap failed: {e}")


# =============================================================================
# X.509 certificate
# =============================================================================


class CertificateKeyProtector(KeyProtector):
    """
    Hybrid wrapping under an RSA certificate.

    A fresh AES-256 content key encrypts the master key; the content key is
    encrypted with RSA-OAEP-SHA256 under the certificate's public key. Blob
    layout: ``len(2) | rsa_wrapped_cek | nonce | ciphertext | tag``.

    Without a private key the protector can wrap (write) but not unwrap.
    """

    name = "certificate"
    _OAEP = padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )

    def __init__(
        self,
        certificate: x509.Certificate,
        private_key: Optional[rsa.RSAPrivateKey] = None,
    ) -> None:
        public_key = certificate.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise ConfigError("Certificate key protector requires an RSA certificate")
        if private_key is not None:
            if not isinstance(private_key, rsa.RSAPrivateKey):
                raise ConfigError("Private key must be an RSA key")
            if private_key.public_key().public_numbers() != public_key.public_numbers():
                raise ConfigError("Private key does not match the certificate")
        self._certificate = certificate
        self._public_key = public_key
        self._private_key = private_key
        self._thumbprint = certificate.fingerprint(hashes.SHA256()).hex()

    @property
    def thumbprint(self) -> str:
        """SHA-256 fingerprint of the certificate (hex)."""
        return self._thumbprint

    @property
    def can_unwrap(self) -> bool:
        return self._private_key is not None

    @classmethod
    def from_files(
        cls,
        certificate_path: Union[str, Path],
        private_key_path: Union[str, Path, None] = None,
        password: Optional[str] = None,
    ) -> CertificateKeyProtector:
        """
        Load a PEM certificate and, optionally, its PEM private key.

        Raises:
            ConfigError: If a file is unreadable or malformed
        """
        try:
            certificate = x509.load_pem_x509_certificate(Path(certificate_path).read_bytes())
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot load certificate {certificate_path}: {e}")

        private_key = None
        if private_key_path is not None:
            try:
                private_key = serialization.load_pem_private_key(
                    Path(private_key_path).read_bytes(),
                    password=password.encode("utf-8") if password else None,
                )
            except (OSError, ValueError, TypeError) as e:
                raise ConfigError(f"Cannot load private key {private_key_path}: {e}")

        return cls(certificate, private_key)

    def wrap(self, plaintext_key: bytes) -> WrappedKey:
        cek = SecureKey.generate(AES_256_KEY_SIZE)
        encrypted = AesGcmCipher.encrypt(cek, plaintext_key, self._thumbprint.encode())
        try:
            wrapped_cek = self._public_key.encrypt(cek.as_bytes(), self._OAEP)
        except ValueError as e:
            raise CryptoError(f"Certificate wrap failed: {e}")
        blob = struct.pack(">H", len(wrapped_cek)) + wrapped_cek + encrypted.to_aead_blob()
        return WrappedKey(blob=blob, info={"thumbprint": self._thumbprint})

    def unwrap(self, blob: bytes, info: Dict[str, str]) -> bytes:
        if self._private_key is None:
            raise KeyUnwrapError("Certificate protector has no private key")
        thumbprint = info.get("thumbprint")
        if thumbprint != self._thumbprint:
            raise KeyUnwrapError(f"Key was wrapped with certificate {thumbprint}")
        if len(blob) < 2:
            raise KeyUnwrapError("Certificate-wrapped blob is truncated")

        (cek_len,) = struct.unpack(">H", blob[:2])
        wrapped_cek = blob[2 : 2 + cek_len]
        try:
            cek = SecureKey(self._private_key.decrypt(wrapped_cek, self._OAEP))
            return AesGcmCipher.decrypt(
                cek,
                EncryptedData.from_aead_blob(blob[2 + cek_len :]),
                self._thumbprint.encode(),
            )
        except (ValueError, CryptoError) as e:
            raise KeyUnwrapError(f"Certificate unwrap failed: {e}")


# =============================================================================
# HashiCorp Vault transit
# =============================================================================


class VaultTransitKeyProtector(KeyProtector):
    """
    Delegates wrapping to a HashiCorp Vault transit key; the key material
    never leaves Vault.
    """

    name = "vault-transit"

    def __init__(
        self,
        client: hvac.Client,
        key_name: str,
        mount_point: str = "transit",
    ) -> None:
        if not key_name:
            raise ConfigError("Vault transit key name must not be empty")
        self._client = client
        self._key_name = key_name
        self._mount_point = mount_point

    @classmethod
    def from_url(
        cls,
        url: str,
        token: str,
        key_name: str,
        mount_point: str = "transit",
    ) -> VaultTransitKeyProtector:
        """
        Connect to Vault with a token.

        Raises:
            ConfigError: If Vault rejects the token or is unreachable
        """
        client = hvac.Client(url=url, token=token)
        try:
            authenticated = client.is_authenticated()
        except (VaultError, requests.exceptions.RequestException) as e:
            raise ConfigError(f"Cannot reach Vault at {url}: {e}")
        if not authenticated:
            raise ConfigError(f"Vault at {url} rejected the token")
        return cls(client, key_name, mount_point)

    def wrap(self, plaintext_key: bytes) -> WrappedKey:
        try:
            response = self._client.secrets.transit.encrypt_data(
                name=self._key_name,
                plaintext=base64.standard_b64encode(plaintext_key).decode("ascii"),
                mount_point=self._mount_point,
            )
            ciphertext = response["data"]["ciphertext"]
        except (
            VaultError,
            requests.exceptions.RequestException,
            KeyError,
            TypeError,
        ) as e:
            raise CryptoError(f"Vault transit encrypt failed: {e}")
        return WrappedKey(
            blob=ciphertext.encode("ascii"),
            info={"key_name": self._key_name, "mount_point": self._mount_point},
        )

    def unwrap(self, blob: bytes, info: Dict[str, str]) -> bytes:
        try:
            response = self._client.secrets.transit.decrypt_data(
                name=info.get("key_name", self._key_name),
                ciphertext=blob.decode("ascii"),
                mount_point=info.get("mount_point", self._mount_point),
            )
            return base64.standard_b64decode(response["data"]["plaintext"])
        except (
            VaultError,
            requests.exceptions.RequestException,
            KeyError,
            TypeError,
            ValueError,
        ) as e:
            raise KeyUnwrapError(f"Vault transit decrypt failed: {e}")
