"""Shared fixtures for the clinical vault test suite."""

import pytest

from clinical_vault.adapters.blob_store import InMemoryBlobStore
from clinical_vault.adapters.storage import InMemoryStorageAdapter
from clinical_vault.adapters.virus_scanner import SignatureVirusScanner
from clinical_vault.facade import ClinicalVault
from clinical_vault.infrastructure.audit import AuditLogger
from clinical_vault.infrastructure.encryption import EncryptionService, StaticKeyProvider

from tests.factories import TEST_ITERATIONS, new_user_id


@pytest.fixture
def actor() -> str:
    return new_user_id()


@pytest.fixture
def storage():
    adapter = InMemoryStorageAdapter()
    adapter.initialize_schema()
    return adapter


@pytest.fixture
def encryption_service():
    return EncryptionService(
        StaticKeyProvider("test-master-key-0123456789", key_id="test-v1"),
        iterations=TEST_ITERATIONS,
    )


@pytest.fixture
def audit(storage, encryption_service):
    return AuditLogger(storage, encryption_service)


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def vault(storage, encryption_service, blob_store):
    return ClinicalVault(
        storage,
        encryption_service,
        blob_store=blob_store,
        virus_scanner=SignatureVirusScanner(),
        db_type="memory",
    )
