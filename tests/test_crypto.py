"""
Tests for the cryptographic primitives and payload encryptors.
"""

from __future__ import annotations

import pytest

from data_protection import (
    AlgorithmConfiguration,
    CbcHmacEncryptor,
    CryptoError,
    EncryptionAlgorithm,
    GcmEncryptor,
    SecureKey,
    ValidationAlgorithm,
    create_encryptor,
)
from data_protection.crypto import AesGcmCipher, EncryptedData

AAD = b"header-bytes"

ALL_CONFIGS = [
    AlgorithmConfiguration(encryption, validation)
    for encryption in EncryptionAlgorithm
    for validation in ValidationAlgorithm
]


class TestSecureKey:
    def test_generate_default_size(self):
        assert len(SecureKey.generate()) == 64

    def test_generate_custom_size(self):
        assert len(SecureKey.generate(32)) == 32

    def test_repr_is_redacted(self):
        key = SecureKey(b"\x01" * 32)
        assert "REDACTED" in repr(key)
        assert "\\x01" not in repr(key)

    def test_rejects_non_bytes(self):
        with pytest.raises(CryptoError):
            SecureKey("not bytes")


class TestAesGcmCipher:
    def test_round_trip_with_aad(self):
        key = SecureKey.generate(32)
        encrypted = AesGcmCipher.encrypt(key, b"wrapped master key", b"aad")
        assert AesGcmCipher.decrypt(key, encrypted, b"aad") == b"wrapped master key"

    def test_wrong_aad_fails(self):
        key = SecureKey.generate(32)
        encrypted = AesGcmCipher.encrypt(key, b"data", b"aad")
        with pytest.raises(CryptoError, match="Decryption failed"):
            AesGcmCipher.decrypt(key, encrypted, b"other")

    def test_invalid_key_size(self):
        with pytest.raises(CryptoError, match="Invalid key size"):
            AesGcmCipher.encrypt(SecureKey.generate(16), b"data")

    def test_blob_round_trip(self):
        key = SecureKey.generate(32)
        encrypted = AesGcmCipher.encrypt(key, b"data")
        parsed = EncryptedData.from_aead_blob(encrypted.to_aead_blob())
        assert AesGcmCipher.decrypt(key, parsed) == b"data"

    def test_blob_too_small(self):
        with pytest.raises(CryptoError, match="too small"):
            EncryptedData.from_aead_blob(b"\x00" * 10)


class TestEncryptors:
    @pytest.mark.parametrize("config", ALL_CONFIGS, ids=str)
    def test_round_trip(self, config: AlgorithmConfiguration):
        encryptor = create_encryptor(config)
        key = SecureKey.generate()
        payload = encryptor.encrypt(b"hello world", key, AAD)

        parsed = encryptor.parse(payload.to_bytes())
        assert encryptor.decrypt(parsed, key, AAD) == b"hello world"

    def test_variant_selection(self):
        assert isinstance(create_encryptor(AlgorithmConfiguration()), CbcHmacEncryptor)
        assert isinstance(
            create_encryptor(AlgorithmConfiguration(EncryptionAlgorithm.AES_256_GCM)),
            GcmEncryptor,
        )

    def test_cbc_layout(self):
        config = AlgorithmConfiguration(
            EncryptionAlgorithm.AES_256_CBC, ValidationAlgorithm.HMACSHA512
        )
        payload = CbcHmacEncryptor(config).encrypt(b"x" * 20, SecureKey.generate(), AAD)
        assert len(payload.iv) == 16
        assert len(payload.ciphertext) == 32
        assert len(payload.tag) == 64

    def test_cbc_empty_plaintext_is_one_padding_block(self):
        encryptor = CbcHmacEncryptor(AlgorithmConfiguration())
        key = SecureKey.generate()
        payload = encryptor.encrypt(b"", key, AAD)
        assert len(payload.ciphertext) == 16
        assert encryptor.decrypt(payload, key, AAD) == b""

    def test_gcm_layout(self):
        encryptor = GcmEncryptor(AlgorithmConfiguration(EncryptionAlgorithm.AES_128_GCM))
        payload = encryptor.encrypt(b"abc", SecureKey.generate(), AAD)
        assert len(payload.iv) == 12
        assert len(payload.ciphertext) == 3
        assert len(payload.tag) == 16

    def test_fresh_iv_per_call(self):
        encryptor = create_encryptor(AlgorithmConfiguration())
        key = SecureKey.generate()
        first = encryptor.encrypt(b"same", key, AAD)
        second = encryptor.encrypt(b"same", key, AAD)
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    @pytest.mark.parametrize("config", ALL_CONFIGS[::2], ids=str)
    def test_wrong_associated_data_fails(self, config: AlgorithmConfiguration):
        encryptor = create_encryptor(config)
        key = SecureKey.generate()
        payload = encryptor.encrypt(b"data", key, AAD)
        with pytest.raises(CryptoError, match="Decryption failed"):
            encryptor.decrypt(payload, key, b"other-header")

    def test_wrong_master_key_fails(self):
        encryptor = create_encryptor(AlgorithmConfiguration())
        payload = encryptor.encrypt(b"data", SecureKey.generate(), AAD)
        with pytest.raises(CryptoError, match="Decryption failed"):
            encryptor.decrypt(payload, SecureKey.generate(), AAD)

    @pytest.mark.parametrize(
        "encryption", [EncryptionAlgorithm.AES_256_CBC, EncryptionAlgorithm.AES_256_GCM]
    )
    def test_tampered_body_fails(self, encryption: EncryptionAlgorithm):
        encryptor = create_encryptor(AlgorithmConfiguration(encryption))
        key = SecureKey.generate()
        body = encryptor.encrypt(b"sixteen byte msg", key, AAD).to_bytes()

        for i in range(len(body)):
            tampered = bytearray(body)
            tampered[i] ^= 0x01
            with pytest.raises(CryptoError, match="Decryption failed"):
                encryptor.decrypt(encryptor.parse(bytes(tampered)), key, AAD)

    def test_parse_rejects_short_body(self):
        encryptor = create_encryptor(AlgorithmConfiguration())
        with pytest.raises(CryptoError, match="Decryption failed"):
            encryptor.parse(b"\x00" * (16 + 16 + 32 - 1))
