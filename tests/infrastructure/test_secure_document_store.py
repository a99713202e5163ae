"""
Test suite for SecureDocumentStore.

Covers upload validation, encryption at rest, the processing lifecycle,
versioning, access control and deletion.
"""

from unittest.mock import Mock

import pytest
from pydantic import ValidationError

from clinical_vault.adapters.directory import InMemoryTenantDirectory
from clinical_vault.adapters.virus_scanner import EICAR_SIGNATURE, SignatureVirusScanner
from clinical_vault.domain.audit_models import AuditLogFilter
from clinical_vault.domain.document import MAX_FILE_SIZE, FileUpload
from clinical_vault.domain.enums import AccessResult, DocumentStatus, VirusScanResult
from clinical_vault.domain.errors import (
    AccessDeniedError,
    ConcurrencyConflictError,
    DocumentNotFoundError,
    DocumentStateError,
    DocumentValidationError,
    PatientNotFoundError,
)
from clinical_vault.domain.identifiers import DocumentId, PatientId
from clinical_vault.domain.ports import TenantDirectoryPort
from clinical_vault.domain.services import PatientRegistry
from clinical_vault.infrastructure.config_manager import DocumentConfig
from clinical_vault.infrastructure.documents import SecureDocumentStore

from tests.factories import PDF_BYTES, make_registration, make_upload, new_user_id, pdf_file


@pytest.fixture
def store(storage, blob_store, encryption_service, audit):
    return SecureDocumentStore(
        storage, blob_store, encryption_service, audit,
        virus_scanner=SignatureVirusScanner(),
    )


@pytest.fixture
def patient(storage, audit, actor):
    return PatientRegistry(storage, audit).register_patient(make_registration(), actor)


@pytest.fixture
def uploaded(store, patient, actor):
    return store.upload_document(patient.id, pdf_file(), make_upload(), actor)


class TestUpload:

    def test_upload_stores_ciphertext(self, store, blob_store, storage, uploaded, patient):
        assert uploaded.status == DocumentStatus.UPLOADING
        assert uploaded.version == 1
        assert uploaded.file_path.startswith(f"{patient.id}/{uploaded.id}/v1_")
        assert uploaded.file_path.endswith(".pdf")
        assert uploaded.security_info.checksum == store.encryption_service.checksum(PDF_BYTES)

        stored = blob_store.get(uploaded.file_path)
        assert stored != PDF_BYTES
        assert PDF_BYTES not in stored

        metadata = storage.get_encryption_metadata(uploaded.id, uploaded.file_path)
        assert metadata.algorithm == "AES-256-GCM"
        assert metadata.key_id == "test-v1"
        assert metadata.salt_owner == str(patient.id)

    def test_retrieve_file_decrypts(self, store, uploaded):
        assert store.retrieve_file(uploaded.file_path) == PDF_BYTES

    def test_file_over_fifty_megabytes_rejected(self, store, blob_store, patient, actor):
        big = FileUpload("scan.pdf", "application/pdf", b"x" * (60 * 1024 * 1024))
        with pytest.raises(DocumentValidationError) as exc_info:
            store.upload_document(patient.id, big, make_upload(), actor)
        assert any("too large" in error for error in exc_info.value.errors)
        assert len(blob_store) == 0

    def test_all_errors_reported(self, store, patient, actor):
        bad = FileUpload("", "application/x-msdownload", b"")
        with pytest.raises(DocumentValidationError) as exc_info:
            store.upload_document(patient.id, bad, make_upload(title=" "), actor)
        assert len(exc_info.value.errors) == 4

    def test_configured_limits(self, storage, blob_store, encryption_service, patient, actor):
        store = SecureDocumentStore(
            storage, blob_store, encryption_service,
            document_config=DocumentConfig(max_file_size_bytes=10, allowed_mime_types=["text/plain"]),
        )
        with pytest.raises(DocumentValidationError) as exc_info:
            store.upload_document(patient.id, pdf_file(), make_upload(), actor)
        assert len(exc_info.value.errors) == 2

    def test_size_ceiling_cannot_be_raised(self, storage, blob_store, encryption_service, patient, actor):
        with pytest.raises(ValidationError):
            DocumentConfig(max_file_size_bytes=200 * 1024 * 1024)

        raised = DocumentConfig.model_construct(max_file_size_bytes=200 * 1024 * 1024)
        store = SecureDocumentStore(storage, blob_store, encryption_service, document_config=raised)
        assert store.max_file_size == MAX_FILE_SIZE

        big = FileUpload("big.pdf", "application/pdf", b"%PDF" + b"0" * (60 * 1024 * 1024))
        with pytest.raises(DocumentValidationError) as exc_info:
            store.upload_document(patient.id, big, make_upload(), actor)
        assert any("too large" in error for error in exc_info.value.errors)
        assert len(blob_store) == 0

    def test_unknown_patient(self, store, actor):
        with pytest.raises(PatientNotFoundError):
            store.upload_document(str(PatientId.generate()), pdf_file(), make_upload(), actor)

    def test_upload_is_audited(self, store, audit, uploaded):
        logs = audit.query_audit_logs(AuditLogFilter(data_type="document")).logs
        assert len(logs) == 1
        assert logs[0].operation == "create"
        assert logs[0].new_values["document_id"] == str(uploaded.id)


class TestProcessing:

    def test_clean_document_validated(self, store, uploaded):
        processed = store.process_document(uploaded.id)
        assert processed.status == DocumentStatus.VALIDATED
        assert processed.security_info.is_encrypted
        assert processed.security_info.virus_scan_result == VirusScanResult.CLEAN
        assert processed.can_be_accessed()

    def test_processing_is_idempotent(self, store, uploaded):
        first = store.process_document(uploaded.id)
        second = store.process_document(uploaded.id)
        assert second.status == DocumentStatus.VALIDATED
        assert second.version == first.version

    def test_steps_resume_individually(self, store, uploaded):
        assert store.mark_encrypted(uploaded.id).status == DocumentStatus.PROCESSING
        assert store.mark_encrypted(uploaded.id).status == DocumentStatus.PROCESSING
        assert store.run_virus_scan(uploaded.id).status == DocumentStatus.VALIDATED

    def test_infected_document_fails_validation(self, store, patient, actor):
        document = store.upload_document(patient.id, pdf_file(data=b"%PDF " + EICAR_SIGNATURE), make_upload(), actor)
        processed = store.process_document(document.id)

        assert processed.status == DocumentStatus.FAILED_VALIDATION
        assert processed.security_info.virus_scan_result == VirusScanResult.INFECTED
        with pytest.raises(DocumentStateError):
            store.download_document(document.id, actor)

    def test_without_scanner_scan_stays_pending(self, storage, blob_store, encryption_service, patient, actor):
        store = SecureDocumentStore(storage, blob_store, encryption_service)
        document = store.upload_document(patient.id, pdf_file(), make_upload(), actor)
        processed = store.process_document(document.id)

        assert processed.status == DocumentStatus.PROCESSING
        assert processed.security_info.virus_scan_result == VirusScanResult.PENDING

    def test_scan_before_encryption(self, store, uploaded):
        with pytest.raises(DocumentStateError):
            store.run_virus_scan(uploaded.id)


class TestDownload:

    def test_download_validated(self, store, audit, uploaded, actor):
        store.process_document(uploaded.id)
        assert store.download_document(uploaded.id, actor) == PDF_BYTES

        logs = audit.query_audit_logs(AuditLogFilter(operation="download")).logs
        assert logs[0].access_result == AccessResult.GRANTED

    def test_download_before_validation_denied(self, store, audit, uploaded, actor):
        with pytest.raises(DocumentStateError):
            store.download_document(uploaded.id, actor)
        logs = audit.query_audit_logs(AuditLogFilter(operation="download")).logs
        assert logs[0].access_result == AccessResult.DENIED

    def test_unknown_document(self, store, actor):
        with pytest.raises(DocumentNotFoundError):
            store.download_document(str(DocumentId.generate()), actor)
        with pytest.raises(DocumentNotFoundError):
            store.get_document("not-an-id")

    def test_unknown_version(self, store, uploaded, actor):
        store.process_document(uploaded.id)
        with pytest.raises(DocumentNotFoundError):
            store.download_document(uploaded.id, actor, version=7)


class TestVersions:

    def test_new_version(self, store, blob_store, uploaded, actor):
        store.process_document(uploaded.id)
        updated = store.create_document_version(
            uploaded.id, pdf_file(data=PDF_BYTES + b"% v2\n", name="report-v2.pdf"), actor, note="Signed copy",
        )

        assert updated.version == 2
        assert updated.status == DocumentStatus.UPLOADING
        assert updated.file_path.startswith(f"{uploaded.patient_id}/{uploaded.id}/v2_")
        assert [v.version for v in store.get_document_versions(uploaded.id)] == [1, 2]
        assert blob_store.exists(uploaded.file_path)

        store.process_document(uploaded.id)
        assert store.download_document(uploaded.id, actor) == PDF_BYTES + b"% v2\n"
        assert store.download_document(uploaded.id, actor, version=1) == PDF_BYTES

    def test_metadata_update_bumps_version(self, store, uploaded, actor):
        updated = store.update_document_metadata(uploaded.id, {"title": "Revised assessment"}, actor)
        assert updated.version == uploaded.version + 1
        assert updated.metadata.title == "Revised assessment"

    def test_every_version_stays_retrievable(self, store, uploaded, actor):
        for title in ("Second", "Third", "Fourth"):
            store.update_document_metadata(uploaded.id, {"title": title}, actor)
        store.process_document(uploaded.id)

        versions = store.get_document_versions(uploaded.id)
        assert store.get_document(uploaded.id).version == 4
        assert [v.version for v in versions] == [1, 2, 3, 4]
        assert {v.checksum for v in versions} == {uploaded.security_info.checksum}
        for record in versions:
            assert store.download_document(uploaded.id, actor, version=record.version) == PDF_BYTES

    def test_prior_version_downloadable_while_new_file_processes(self, store, uploaded, actor):
        store.process_document(uploaded.id)
        store.create_document_version(uploaded.id, pdf_file(data=PDF_BYTES + b"% v2\n", name="v2.pdf"), actor)

        assert store.download_document(uploaded.id, actor, version=1) == PDF_BYTES
        with pytest.raises(DocumentStateError):
            store.download_document(uploaded.id, actor)
        with pytest.raises(DocumentStateError):
            store.download_document(uploaded.id, actor, version=2)

    def test_unvalidated_prior_version_stays_blocked(self, store, uploaded, actor):
        store.create_document_version(uploaded.id, pdf_file(name="v2.pdf"), actor)
        with pytest.raises(DocumentStateError):
            store.download_document(uploaded.id, actor, version=1)

    def test_unknown_metadata_field_rejected(self, store, uploaded, actor):
        with pytest.raises(ValueError, match="Unknown document metadata fields: colour"):
            store.update_document_metadata(uploaded.id, {"colour": "blue"}, actor)
        with pytest.raises(ValueError):
            store.update_document_metadata(uploaded.id, {}, actor)
        assert store.get_document(uploaded.id).version == 1

    def test_stale_metadata_update(self, store, uploaded, actor):
        store.update_document_metadata(uploaded.id, {"title": "First"}, actor)
        with pytest.raises(ConcurrencyConflictError):
            store.update_document_metadata(uploaded.id, {"title": "Second"}, actor, expected_version=1)


class TestAccessControl:

    @pytest.fixture
    def directory(self, patient):
        directory = InMemoryTenantDirectory()
        directory.assign_patient(str(patient.id), "clinic-1")
        return directory

    @pytest.fixture
    def store(self, storage, blob_store, encryption_service, audit, directory):
        return SecureDocumentStore(
            storage, blob_store, encryption_service, audit,
            virus_scanner=SignatureVirusScanner(), directory=directory,
        )

    def test_other_tenant_cannot_upload(self, store, directory, patient):
        outsider = new_user_id()
        directory.assign_user(outsider, "clinic-2", "doctor")
        with pytest.raises(AccessDeniedError):
            store.upload_document(patient.id, pdf_file(), make_upload(), outsider)

    def test_confidential_requires_role(self, store, directory, audit, patient):
        doctor, receptionist = new_user_id(), new_user_id()
        directory.assign_user(doctor, "clinic-1", "doctor")
        directory.assign_user(receptionist, "clinic-1", "receptionist")

        document = store.upload_document(patient.id, pdf_file(), make_upload(is_confidential=True), doctor)
        assert document.clinic_id == "clinic-1"
        store.process_document(document.id)

        assert store.download_document(document.id, doctor) == PDF_BYTES
        with pytest.raises(AccessDeniedError):
            store.download_document(document.id, receptionist)

        denied = audit.query_audit_logs(AuditLogFilter(user_id=receptionist)).logs
        assert [log.access_result for log in denied] == [AccessResult.DENIED]

    def test_directory_role_case_ignored(self, storage, blob_store, encryption_service, patient):
        directory = Mock(spec=TenantDirectoryPort)
        directory.shares_tenant.return_value = True
        directory.get_role.return_value = "Doctor"
        directory.get_tenant_for_patient.return_value = "clinic-1"
        store = SecureDocumentStore(
            storage, blob_store, encryption_service,
            virus_scanner=SignatureVirusScanner(), directory=directory,
        )
        doctor = new_user_id()

        document = store.upload_document(patient.id, pdf_file(), make_upload(is_confidential=True), doctor)
        store.process_document(document.id)
        assert store.download_document(document.id, doctor) == PDF_BYTES


class TestArchiveAndDelete:

    def test_archive_requires_validation(self, store, uploaded, actor):
        with pytest.raises(DocumentStateError):
            store.archive_document(uploaded.id, actor)
        store.process_document(uploaded.id)
        assert store.archive_document(uploaded.id, actor).status == DocumentStatus.ARCHIVED

    def test_archived_documents_filtered(self, store, uploaded, patient, actor):
        store.process_document(uploaded.id)
        store.archive_document(uploaded.id, actor)
        assert store.list_patient_documents(patient.id, include_archived=False) == []
        assert len(store.list_patient_documents(patient.id)) == 1

    def test_delete_removes_every_version(self, store, blob_store, storage, uploaded, actor):
        store.create_document_version(uploaded.id, pdf_file(name="v2.pdf"), actor)
        assert len(blob_store) == 2

        assert store.delete_document(uploaded.id, actor)
        assert len(blob_store) == 0
        assert storage.get_document(uploaded.id) is None
        assert storage.get_encryption_metadata(uploaded.id, uploaded.file_path) is None


class TestStatistics:

    def test_statistics(self, store, patient, actor):
        store.upload_document(patient.id, pdf_file(), make_upload(), actor)
        second = store.upload_document(patient.id, pdf_file(data=PDF_BYTES * 3), make_upload(), actor)
        store.process_document(second.id)

        stats = store.get_document_statistics(patient.id)
        assert stats.total_documents == 2
        assert stats.documents_by_status == {"uploading": 1, "validated": 1}
        assert stats.documents_by_type == {"medical_report": 2}
        assert stats.total_storage_size == len(PDF_BYTES) * 4
        assert stats.average_file_size == len(PDF_BYTES) * 2
        assert stats.expired_documents == 0

    def test_empty_statistics(self, store):
        stats = store.get_document_statistics()
        assert stats.total_documents == 0
        assert stats.average_file_size == 0.0
