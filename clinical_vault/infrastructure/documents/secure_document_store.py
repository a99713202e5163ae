"""Secure Document Store.

Stores clinical documents encrypted at rest and drives their processing
lifecycle (``UPLOADING -> PROCESSING -> VALIDATED | FAILED_VALIDATION``,
then ``ARCHIVED``).

Security Impact:
    - Every file is encrypted with AES-256-GCM under a per-patient key before
      it reaches the blob store; only IV, tag, algorithm and key id are kept
    - Plaintext is checksummed (SHA-256) before encryption
    - Confidential documents require a role from the configured set
    - Downloads are only served for validated, encrypted, scan-clean
      documents, and every attempt is audited

Architecture:
    - Infrastructure service combining StoragePort, BlobStorePort,
      EncryptionService, VirusScannerPort and TenantDirectoryPort
    - Each processing step is idempotent and can be resumed after a failure
"""

import logging
from typing import Iterable, Optional, Union

from pydantic import BaseModel

from clinical_vault.domain.document import (
    ALLOWED_MIME_TYPES,
    MAX_FILE_SIZE,
    Document,
    DocumentSecurityInfo,
    DocumentUpload,
    DocumentVersion,
    EncryptionMetadata,
    FileUpload,
    build_file_path,
    parse_document_id,
    validate_upload,
)
from clinical_vault.domain.enums import AccessResult, DocumentStatus, VirusScanResult
from clinical_vault.domain.errors import (
    AccessDeniedError,
    DocumentNotFoundError,
    DocumentStateError,
    DocumentValidationError,
    EncryptionError,
    PatientNotFoundError,
)
from clinical_vault.domain.identifiers import DocumentId, PatientId, UserId
from clinical_vault.domain.ports import (
    AuditTrailPort,
    BlobStorePort,
    StoragePort,
    TenantDirectoryPort,
    VirusScannerPort,
)
from clinical_vault.infrastructure.config_manager import DEFAULT_CONFIDENTIAL_ROLES, DocumentConfig
from clinical_vault.infrastructure.encryption.encryption_service import EncryptionService

logger = logging.getLogger(__name__)

DATA_TYPE = "document"


class DocumentStatistics(BaseModel):
    total_documents: int
    documents_by_status: dict[str, int]
    documents_by_type: dict[str, int]
    total_storage_size: int
    average_file_size: float
    expired_documents: int


class SecureDocumentStore:
    """Encrypted document storage with lifecycle, versioning and audit.

    Example Usage:
        ```python
        store = SecureDocumentStore(storage, InMemoryBlobStore(), encryption, audit,
                                    virus_scanner=SignatureVirusScanner())
        document = store.upload_document(
            patient.id, FileUpload("report.pdf", "application/pdf", data),
            DocumentUpload(title="Avaliação inicial"), actor=user_id,
        )
        document = store.process_document(document.id)
        content = store.download_document(document.id, actor=user_id)
        ```
    """

    def __init__(
        self,
        storage: StoragePort,
        blob_store: BlobStorePort,
        encryption_service: EncryptionService,
        audit: Optional[AuditTrailPort] = None,
        virus_scanner: Optional[VirusScannerPort] = None,
        directory: Optional[TenantDirectoryPort] = None,
        document_config: Optional[DocumentConfig] = None,
        confidential_roles: Optional[Iterable[str]] = None
    ):
        self.storage = storage
        self.blob_store = blob_store
        self.encryption_service = encryption_service
        self.audit = audit
        self.virus_scanner = virus_scanner
        self.directory = directory
        config = document_config or DocumentConfig()
        self.max_file_size = min(config.max_file_size_bytes or MAX_FILE_SIZE, MAX_FILE_SIZE)
        self.allowed_mime_types = frozenset(config.allowed_mime_types or ALLOWED_MIME_TYPES)
        self.confidential_roles = frozenset(
            r.lower() for r in (confidential_roles if confidential_roles is not None else DEFAULT_CONFIDENTIAL_ROLES)
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _log(
        self,
        actor,
        operation: str,
        document: Optional[Document] = None,
        patient_id=None,
        access_result: AccessResult = AccessResult.GRANTED,
        justification: Optional[str] = None,
        old_values=None,
        new_values=None
    ) -> None:
        if self.audit is None:
            return
        if patient_id is None and document is not None:
            patient_id = document.patient_id
        values = new_values
        if document is not None:
            values = {"document_id": str(document.id), **(new_values or {})}
        self.audit.log_data_access(
            user_id=str(actor),
            operation=operation,
            data_type=DATA_TYPE,
            patient_id=str(patient_id) if patient_id is not None else None,
            access_result=access_result,
            old_values=old_values,
            new_values=values,
            justification=justification,
        )

    def _authorize(self, actor, patient_id, is_confidential: bool, operation: str) -> None:
        """Raise ``AccessDeniedError`` (audited) when the actor may not proceed."""
        if self.directory is None:
            return
        user = str(actor)
        reason = None
        if not self.directory.shares_tenant(user, str(patient_id)):
            reason = "User does not belong to the patient's tenant"
        elif is_confidential and (self.directory.get_role(user) or "").lower() not in self.confidential_roles:
            reason = "Insufficient role for confidential document"
        if reason:
            self._log(actor, operation, patient_id=patient_id, access_result=AccessResult.DENIED,
                      justification=reason)
            raise AccessDeniedError(reason, user_id=user, patient_id=str(patient_id))

    def _require_document(self, document_id: Union[DocumentId, str]) -> Document:
        try:
            did = DocumentId.coerce(document_id)
        except ValueError as e:
            raise DocumentNotFoundError(document_id) from e
        document = self.storage.get_document(did)
        if document is None:
            raise DocumentNotFoundError(did)
        return document

    def _validate(self, file: FileUpload, upload: DocumentUpload) -> None:
        report = validate_upload(file, upload, self.max_file_size, self.allowed_mime_types)
        for warning in report.warnings:
            logger.warning(f"Upload {file.file_name!r}: {warning}")
        if not report.is_valid:
            raise DocumentValidationError(report.errors, report.warnings)

    def _store_encrypted(self, data: bytes, patient_id: PatientId, document_id: DocumentId, path: str) -> None:
        """Encrypt ``data``, write the blob and its encryption metadata."""
        encrypted = self.encryption_service.encrypt_file(data, str(patient_id), str(document_id))
        self.blob_store.put(path, encrypted.ciphertext)
        try:
            self.storage.save_encryption_metadata(EncryptionMetadata(
                document_id=document_id,
                file_path=path,
                algorithm=encrypted.algorithm,
                iv=encrypted.iv,
                auth_tag=encrypted.auth_tag,
                key_id=encrypted.key_id,
                salt_owner=str(patient_id),
            ))
        except Exception:
            self.blob_store.delete(path)
            raise

    def _discard(self, document_id: DocumentId, path: str) -> None:
        try:
            self.blob_store.delete(path)
            self.storage.delete_encryption_metadata(document_id, path)
        except Exception as e:
            logger.error(f"Cleanup of {path} after failed write also failed: {type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # upload and versions
    # ------------------------------------------------------------------

    def upload_document(
        self,
        patient_id: Union[PatientId, str],
        file: FileUpload,
        upload: DocumentUpload,
        actor: Union[UserId, str]
    ) -> Document:
        """Validate, encrypt and store a new document (status UPLOADING, version 1).

        Raises:
            PatientNotFoundError: If the patient does not exist
            AccessDeniedError: If the actor may not add documents for the patient
            DocumentValidationError: Listing every broken upload rule
        """
        try:
            pid = PatientId.coerce(patient_id)
        except ValueError as e:
            raise PatientNotFoundError(patient_id) from e
        if not self.storage.patient_exists(pid):
            raise PatientNotFoundError(pid)
        self._authorize(actor, pid, upload.is_confidential, "create")
        self._validate(file, upload)

        user = UserId.coerce(actor)
        document_id = DocumentId.generate()
        path = build_file_path(pid, document_id, 1, file.extension)
        checksum = self.encryption_service.checksum(file.data)

        self._store_encrypted(file.data, pid, document_id, path)
        try:
            document = Document(
                id=document_id,
                patient_id=pid,
                clinic_id=self.directory.get_tenant_for_patient(str(pid)) if self.directory else None,
                file_name=file.file_name,
                file_path=path,
                file_size=file.size,
                mime_type=file.content_type,
                metadata=upload.to_metadata(),
                security_info=DocumentSecurityInfo(checksum=checksum),
                uploaded_by=user,
                versions=(DocumentVersion(
                    version=1,
                    file_path=path,
                    checksum=checksum,
                    file_size=file.size,
                    created_by=user,
                    note="Initial upload",
                ),),
            )
            self.storage.save_document(document)
        except Exception:
            self._discard(document_id, path)
            raise

        logger.info(f"Stored document {document_id} for patient {pid} ({file.size} bytes)")
        self._log(actor, "create", document, new_values={"version": 1, "file_size": file.size})
        return document

    def create_document_version(
        self,
        document_id: Union[DocumentId, str],
        file: FileUpload,
        actor: Union[UserId, str],
        note: Optional[str] = None
    ) -> Document:
        """Store new content as version ``n + 1`` and point the document at it."""
        document = self._require_document(document_id)
        self._authorize(actor, document.patient_id, document.metadata.is_confidential, "update")
        self._validate(file, DocumentUpload(title=document.metadata.title))

        version = document.version + 1
        path = build_file_path(document.patient_id, document.id, version, file.extension)
        checksum = self.encryption_service.checksum(file.data)

        self._store_encrypted(file.data, document.patient_id, document.id, path)
        try:
            updated = document.add_version(
                file_path=path,
                file_name=file.file_name,
                file_size=file.size,
                mime_type=file.content_type,
                checksum=checksum,
                actor=UserId.coerce(actor),
                note=note,
            )
            self.storage.save_document(updated, expected_version=document.version)
        except Exception:
            self._discard(document.id, path)
            raise

        self._log(actor, "update", updated, old_values={"version": document.version},
                  new_values={"version": version}, justification=note)
        return updated

    def update_document_metadata(
        self,
        document_id: Union[DocumentId, str],
        changes: dict,
        actor: Union[UserId, str],
        expected_version: Optional[int] = None,
        note: Optional[str] = None
    ) -> Document:
        """Apply metadata changes; the version goes up by exactly one.

        Raises:
            ConcurrencyConflictError: If ``expected_version`` is stale
        """
        document = self._require_document(document_id)
        self._authorize(actor, document.patient_id, document.metadata.is_confidential, "update")
        updated = document.update_metadata(changes, UserId.coerce(actor), note)
        self.storage.save_document(
            updated,
            expected_version=expected_version if expected_version is not None else document.version,
        )
        old = document.metadata.model_dump(mode="json")
        self._log(
            actor, "update", updated,
            old_values={k: old.get(k) for k in changes},
            new_values={"changed_fields": sorted(changes), "version": updated.version},
        )
        return updated

    def get_document(self, document_id: Union[DocumentId, str]) -> Document:
        return self._require_document(document_id)

    def get_document_versions(self, document_id: Union[DocumentId, str]) -> list[DocumentVersion]:
        return list(self._require_document(document_id).versions)

    # ------------------------------------------------------------------
    # processing
    # ------------------------------------------------------------------

    def mark_encrypted(self, document_id: Union[DocumentId, str]) -> Document:
        """Confirm the current file's encryption metadata and move to PROCESSING."""
        document = self._require_document(document_id)
        metadata = self.storage.get_encryption_metadata(document.id, document.file_path)
        if metadata is None:
            raise EncryptionError(
                "Encryption metadata not found", operation="mark_encrypted",
                details={"document_id": str(document.id)},
            )
        updated = document.mark_encrypted(metadata.algorithm)
        if updated is not document:
            self.storage.save_document(updated, expected_version=document.version)
        return updated

    def run_virus_scan(self, document_id: Union[DocumentId, str]) -> Document:
        """Scan the current file; without a scanner the result stays pending."""
        document = self._require_document(document_id)
        if document.status == DocumentStatus.VALIDATED:
            return document
        if self.virus_scanner is None:
            result = VirusScanResult.PENDING
        else:
            result = self.virus_scanner.scan(self.retrieve_file(document.file_path))
        updated = document.record_scan(result)
        if updated is not document:
            self.storage.save_document(updated, expected_version=document.version)
        if result == VirusScanResult.INFECTED:
            logger.warning(f"Document {document.id} failed virus scan")
        return updated

    def process_document(self, document_id: Union[DocumentId, str], actor: Optional[Union[UserId, str]] = None) -> Document:
        """Run the encryption and scan steps; safe to repeat after a failure."""
        document = self._require_document(document_id)
        if document.status in (DocumentStatus.VALIDATED, DocumentStatus.ARCHIVED,
                               DocumentStatus.FAILED_VALIDATION):
            return document
        self.mark_encrypted(document.id)
        processed = self.run_virus_scan(document.id)
        self._log(actor or document.uploaded_by, "process", processed,
                  new_values={"status": processed.status.value})
        return processed

    # ------------------------------------------------------------------
    # retrieval
    # ------------------------------------------------------------------

    def retrieve_file(self, file_path: str) -> bytes:
        """Decrypt and return the plaintext stored at ``file_path``.

        Raises:
            EncryptionError: If the metadata is missing or authentication fails
        """
        try:
            document_id = parse_document_id(file_path)
        except ValueError as e:
            raise EncryptionError(f"Invalid document path: {file_path}", operation="retrieve_file") from e

        metadata = self.storage.get_encryption_metadata(document_id, file_path)
        if metadata is None:
            raise EncryptionError(
                "Encryption metadata not found", operation="retrieve_file",
                details={"document_id": str(document_id)},
            )
        try:
            ciphertext = self.blob_store.get(file_path)
        except KeyError as e:
            raise DocumentNotFoundError(document_id, f"Stored file for document {document_id} not found") from e

        return self.encryption_service.decrypt_file(
            ciphertext, metadata.iv, metadata.auth_tag, metadata.salt_owner, str(document_id)
        )

    def download_document(
        self,
        document_id: Union[DocumentId, str],
        actor: Union[UserId, str],
        version: Optional[int] = None
    ) -> bytes:
        """Return the plaintext of the current (or a given) version.

        A prior version whose file passed validation stays downloadable while
        a newer file is still being processed.

        Raises:
            DocumentNotFoundError: For an unknown document or version
            AccessDeniedError: If the actor may not read the document
            DocumentStateError: If the requested file is not validated, encrypted and clean
        """
        document = self._require_document(document_id)
        self._authorize(actor, document.patient_id, document.metadata.is_confidential, "download")

        path = document.file_path
        accessible = document.can_be_accessed()
        if version is not None:
            record = document.get_version(version)
            if record is None:
                raise DocumentNotFoundError(document.id, f"Version {version} of document {document.id} not found")
            path = record.file_path
            if path != document.file_path:
                accessible = record.validated and document.status != DocumentStatus.ARCHIVED

        if not accessible:
            self._log(actor, "download", document, access_result=AccessResult.DENIED,
                      justification="Document cannot be accessed due to security or validation state")
            raise DocumentStateError(str(document.id), document.status, "download")

        data = self.retrieve_file(path)
        self._log(actor, "download", document, new_values={"version": version or document.version})
        return data

    # ------------------------------------------------------------------
    # archive and delete
    # ------------------------------------------------------------------

    def archive_document(self, document_id: Union[DocumentId, str], actor: Union[UserId, str]) -> Document:
        document = self._require_document(document_id)
        archived = document.archive()
        if archived is not document:
            self.storage.save_document(archived, expected_version=document.version)
            self._log(actor, "archive", archived, old_values={"status": document.status.value})
        return archived

    def archive_expired_documents(self, actor: Union[UserId, str]) -> int:
        """Archive every document past its retention period."""
        archived = 0
        for document in self.storage.list_documents():
            if document.status == DocumentStatus.ARCHIVED or not document.is_expired():
                continue
            self.archive_document(document.id, actor)
            archived += 1
        if archived:
            logger.info(f"Archived {archived} expired documents")
        return archived

    def delete_document(self, document_id: Union[DocumentId, str], actor: Union[UserId, str]) -> bool:
        """Remove the document record, every version blob and its encryption metadata."""
        document = self._require_document(document_id)
        self._authorize(actor, document.patient_id, document.metadata.is_confidential, "delete")
        paths = {v.file_path for v in document.versions} | {document.file_path}

        self.storage.delete_document(document.id)
        for path in sorted(paths):
            self.blob_store.delete(path)

        self._log(actor, "delete", document, old_values={"version": document.version},
                  new_values={"blobs_removed": len(paths)})
        return True

    # ------------------------------------------------------------------
    # listing and statistics
    # ------------------------------------------------------------------

    def list_patient_documents(
        self,
        patient_id: Union[PatientId, str],
        include_archived: bool = True
    ) -> list[Document]:
        documents = self.storage.list_documents(PatientId.coerce(patient_id))
        if not include_archived:
            documents = [d for d in documents if d.status != DocumentStatus.ARCHIVED]
        return documents

    def get_document_statistics(self, patient_id: Optional[Union[PatientId, str]] = None) -> DocumentStatistics:
        documents = self.storage.list_documents(PatientId.coerce(patient_id) if patient_id else None)
        by_status: dict[str, int] = {}
        by_type: dict[str, int] = {}
        for document in documents:
            by_status[document.status.value] = by_status.get(document.status.value, 0) + 1
            doc_type = document.metadata.document_type.value
            by_type[doc_type] = by_type.get(doc_type, 0) + 1

        total_size = sum(d.file_size for d in documents)
        return DocumentStatistics(
            total_documents=len(documents),
            documents_by_status=by_status,
            documents_by_type=by_type,
            total_storage_size=total_size,
            average_file_size=total_size / len(documents) if documents else 0.0,
            expired_documents=sum(1 for d in documents if d.is_expired()),
        )
