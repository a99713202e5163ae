"""Unit tests for EncryptionService and the key providers."""

import pytest

from clinical_vault.domain.errors import EncryptionError
from clinical_vault.infrastructure.config_manager import SecurityConfig
from clinical_vault.infrastructure.encryption import (
    EncryptionService,
    EnvironmentKeyProvider,
    StaticKeyProvider,
)
from clinical_vault.infrastructure.encryption.encryption_service import FILE_ALGORITHM

from tests.factories import PDF_BYTES, TEST_ITERATIONS


class TestFileEncryption:

    def test_round_trip(self, encryption_service):
        encrypted = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")

        assert encrypted.ciphertext != PDF_BYTES
        assert encrypted.algorithm == FILE_ALGORITHM
        assert encrypted.key_id == "test-v1"
        assert len(bytes.fromhex(encrypted.iv)) == 12
        assert len(bytes.fromhex(encrypted.auth_tag)) == 16

        plaintext = encryption_service.decrypt_file(
            encrypted.ciphertext, encrypted.iv, encrypted.auth_tag, "patient-1", "doc-1"
        )
        assert plaintext == PDF_BYTES

    def test_fresh_iv_per_file(self, encryption_service):
        first = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")
        second = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")
        assert first.iv != second.iv
        assert first.ciphertext != second.ciphertext

    def test_tampered_ciphertext(self, encryption_service):
        encrypted = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")
        tampered = bytes([encrypted.ciphertext[0] ^ 0xFF]) + encrypted.ciphertext[1:]
        with pytest.raises(EncryptionError, match="authentication failed"):
            encryption_service.decrypt_file(tampered, encrypted.iv, encrypted.auth_tag, "patient-1", "doc-1")

    def test_ciphertext_bound_to_document(self, encryption_service):
        encrypted = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")
        with pytest.raises(EncryptionError):
            encryption_service.decrypt_file(
                encrypted.ciphertext, encrypted.iv, encrypted.auth_tag, "patient-1", "doc-2"
            )

    def test_key_is_per_patient(self, encryption_service):
        encrypted = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")
        with pytest.raises(EncryptionError):
            encryption_service.decrypt_file(
                encrypted.ciphertext, encrypted.iv, encrypted.auth_tag, "patient-2", "doc-1"
            )
        assert encryption_service.derive_patient_key("patient-1") != encryption_service.derive_patient_key("patient-2")

    def test_malformed_parameters(self, encryption_service):
        encrypted = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")
        with pytest.raises(EncryptionError, match="Invalid encryption parameters"):
            encryption_service.decrypt_file(encrypted.ciphertext, "not-hex", encrypted.auth_tag, "patient-1", "doc-1")

    def test_other_master_key_cannot_decrypt(self, encryption_service):
        encrypted = encryption_service.encrypt_file(PDF_BYTES, "patient-1", "doc-1")
        other = EncryptionService(StaticKeyProvider("another-master-key-987654"), iterations=TEST_ITERATIONS)
        with pytest.raises(EncryptionError):
            other.decrypt_file(encrypted.ciphertext, encrypted.iv, encrypted.auth_tag, "patient-1", "doc-1")


class TestRecordEncryption:

    def test_round_trip(self, encryption_service):
        token = encryption_service.encrypt_record({"status": "active", "count": 2})
        assert "active" not in token
        assert encryption_service.decrypt_record(token) == {"status": "active", "count": 2}

    def test_invalid_token(self, encryption_service):
        with pytest.raises(EncryptionError):
            encryption_service.decrypt_record("not-a-token")

    def test_hash_value(self):
        assert EncryptionService.hash_value(None) is None
        assert EncryptionService.hash_value({"b": 1, "a": 2}) == EncryptionService.hash_value({"a": 2, "b": 1})
        assert len(EncryptionService.checksum(b"abc")) == 64

    def test_describe_never_exposes_key(self, encryption_service):
        description = encryption_service.describe()
        assert description == {"algorithm": FILE_ALGORITHM, "key_id": "test-v1", "iterations": TEST_ITERATIONS}


class TestKeyProviders:

    def test_empty_static_key(self):
        with pytest.raises(ValueError):
            StaticKeyProvider("")

    def test_static_key_accepts_bytes(self):
        provider = StaticKeyProvider(b"\x01" * 32, key_id="raw")
        assert provider.get_master_key() == b"\x01" * 32
        assert provider.key_id == "raw"

    def test_environment_provider_uses_config(self):
        config = SecurityConfig(master_key="configured-master-key", key_id="env-v2")
        provider = EnvironmentKeyProvider(config)
        assert provider.get_master_key() == b"configured-master-key"
        assert provider.key_id == "env-v2"

    def test_environment_provider_generates_key(self):
        provider = EnvironmentKeyProvider(SecurityConfig())
        assert len(provider.get_master_key()) == 32
