"""Clinical document entity, version records and upload validation.

Security Impact:
    - A document is readable only when VALIDATED, encrypted and scan-clean
    - Confidential documents carry a flag checked by the secure store
    - Encryption metadata (IV, tag, algorithm, key id) is a separate value so it
      can be stored apart from the ciphertext

Architecture:
    - Pure domain layer; the secure store in infrastructure drives the
      lifecycle through the methods defined here
    - ``file_path`` always points at the current version; every version keeps
      its own path and checksum in ``versions``
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_vault.domain.enums import DocumentStatus, DocumentType, VirusScanResult
from clinical_vault.domain.errors import DocumentStateError
from clinical_vault.domain.identifiers import DocumentId, PatientId, UserId
from clinical_vault.domain.utils import add_years, ensure_utc, utc_now
from clinical_vault.domain.value_objects import optional_text, require_text

MAX_FILE_SIZE = 50 * 1024 * 1024
LARGE_FILE_WARNING_SIZE = 10 * 1024 * 1024

ALLOWED_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/jpeg",
    "image/png",
    "image/gif",
    "text/plain",
})

_CHECKSUM_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def _check_checksum(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.lower()
    if not _CHECKSUM_PATTERN.match(v):
        raise ValueError("Checksum must be a SHA-256 hex digest")
    return v


class DocumentMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: Optional[str] = None
    document_type: DocumentType = DocumentType.OTHER
    tags: tuple[str, ...] = ()
    version: int = Field(default=1, ge=1)
    is_confidential: bool = False
    retention_period_years: Optional[int] = Field(default=None, ge=1, le=100)
    legal_basis: Optional[str] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        return require_text(v, "Document title", 255)

    @field_validator("description", mode="before")
    @classmethod
    def validate_description(cls, v: Optional[str]) -> Optional[str]:
        return optional_text(v, "Document description", 1000)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(require_text(tag, "Tag", 50).lower() for tag in v)

    @field_validator("legal_basis", mode="before")
    @classmethod
    def validate_legal_basis(cls, v: Optional[str]) -> Optional[str]:
        return optional_text(v, "Legal basis", 200)


class DocumentSecurityInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_encrypted: bool = False
    encryption_algorithm: Optional[str] = None
    virus_scan_result: VirusScanResult = VirusScanResult.PENDING
    virus_scan_date: Optional[datetime] = None
    checksum: str

    @field_validator("checksum")
    @classmethod
    def validate_checksum(cls, v: str) -> str:
        return _check_checksum(v)


class DocumentVersion(BaseModel):
    """Immutable record of one stored version of a document."""

    model_config = ConfigDict(frozen=True)

    version: int = Field(..., ge=1)
    file_path: str
    checksum: str
    file_size: int = Field(..., ge=0)
    created_by: UserId
    created_at: datetime = Field(default_factory=utc_now)
    note: Optional[str] = None
    validated: bool = False

    @field_validator("checksum")
    @classmethod
    def validate_checksum(cls, v: str) -> str:
        return _check_checksum(v)

    @field_validator("note", mode="before")
    @classmethod
    def validate_note(cls, v: Optional[str]) -> Optional[str]:
        return optional_text(v, "Version note", 500)


class EncryptionMetadata(BaseModel):
    """Parameters needed to decrypt one stored file.

    The key itself is never stored: it is re-derived from the master key
    identified by ``key_id`` with ``salt_owner`` (the patient id used at
    encryption time) as the KDF salt.
    """

    model_config = ConfigDict(frozen=True)

    document_id: DocumentId
    file_path: str
    algorithm: str
    iv: str
    auth_tag: str
    key_id: str
    salt_owner: str
    created_at: datetime = Field(default_factory=utc_now)


class Document(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: DocumentId = Field(default_factory=DocumentId.generate)
    patient_id: PatientId
    clinic_id: Optional[str] = None
    file_name: str
    file_path: str
    file_size: int = Field(..., ge=0)
    mime_type: str
    metadata: DocumentMetadata
    security_info: DocumentSecurityInfo
    status: DocumentStatus = DocumentStatus.UPLOADING
    uploaded_by: UserId
    uploaded_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    versions: tuple[DocumentVersion, ...] = ()

    @field_validator("uploaded_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def version(self) -> int:
        return self.metadata.version

    def _evolve(self, **changes: Any) -> "Document":
        changes["updated_at"] = utc_now()
        return self.model_copy(update=changes)

    def can_be_accessed(self) -> bool:
        return (
            self.status == DocumentStatus.VALIDATED
            and self.security_info.is_encrypted
            and self.security_info.virus_scan_result == VirusScanResult.CLEAN
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        years = self.metadata.retention_period_years
        if not years:
            return False
        return (now or utc_now()) > add_years(self.uploaded_at, years)

    def should_be_archived(self, now: Optional[datetime] = None) -> bool:
        return self.status == DocumentStatus.ARCHIVED or self.is_expired(now)

    def get_version(self, version: int) -> Optional[DocumentVersion]:
        for record in self.versions:
            if record.version == version:
                return record
        return None

    def update_metadata(self, changes: dict, actor: UserId, note: Optional[str] = None) -> "Document":
        """Apply metadata ``changes`` and bump the version by exactly one.

        The new version record points at the current file, so every version
        number stays retrievable.
        """
        protected = {"version"} & set(changes)
        if protected:
            raise ValueError("Document version cannot be set directly")
        unknown = set(changes) - set(DocumentMetadata.model_fields)
        if unknown:
            raise ValueError(f"Unknown document metadata fields: {', '.join(sorted(unknown))}")
        if not changes:
            raise ValueError("No metadata changes given")
        data = self.metadata.model_dump()
        data.update(changes)
        data["version"] = self.metadata.version + 1
        metadata = DocumentMetadata.model_validate(data)
        record = DocumentVersion(
            version=metadata.version,
            file_path=self.file_path,
            checksum=self.security_info.checksum,
            file_size=self.file_size,
            created_by=actor,
            note=note or "Metadata updated",
        )
        return self._evolve(metadata=metadata, versions=self.versions + (record,))

    def add_version(
        self,
        file_path: str,
        file_name: str,
        file_size: int,
        mime_type: str,
        checksum: str,
        actor: UserId,
        note: Optional[str] = None
    ) -> "Document":
        """Point the document at new content; the new file restarts processing."""
        if self.status == DocumentStatus.ARCHIVED:
            raise DocumentStateError(str(self.id), self.status, "version")
        version = self.metadata.version + 1
        record = DocumentVersion(
            version=version,
            file_path=file_path,
            checksum=checksum,
            file_size=file_size,
            created_by=actor,
            note=note,
        )
        versions = self.versions
        if self.can_be_accessed():
            # earlier records of the current file keep its clean scan
            versions = tuple(
                r.model_copy(update={"validated": True}) if r.file_path == self.file_path else r
                for r in versions
            )
        return self._evolve(
            file_path=file_path,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            metadata=self.metadata.model_copy(update={"version": version}),
            security_info=DocumentSecurityInfo(checksum=checksum),
            status=DocumentStatus.UPLOADING,
            versions=versions + (record,),
        )

    def mark_encrypted(self, algorithm: str) -> "Document":
        """Record that the current content is encrypted (idempotent)."""
        if self.status in (DocumentStatus.ARCHIVED, DocumentStatus.FAILED_VALIDATION):
            raise DocumentStateError(str(self.id), self.status, "mark encrypted")
        if self.security_info.is_encrypted and self.status != DocumentStatus.UPLOADING:
            return self
        security = self.security_info.model_copy(update={
            "is_encrypted": True,
            "encryption_algorithm": algorithm,
        })
        status = DocumentStatus.PROCESSING if self.status == DocumentStatus.UPLOADING else self.status
        return self._evolve(security_info=security, status=status)

    def record_scan(self, result: VirusScanResult, scanned_at: Optional[datetime] = None) -> "Document":
        """Apply a virus-scan result.

        Clean and encrypted content is validated, infected content fails
        validation, and a pending scan leaves the document in PROCESSING.
        """
        result = VirusScanResult(result)
        if self.status == DocumentStatus.ARCHIVED:
            raise DocumentStateError(str(self.id), self.status, "scan")
        if self.status == DocumentStatus.UPLOADING:
            raise DocumentStateError(str(self.id), self.status, "scan before encryption of")
        if self.status == DocumentStatus.VALIDATED and result == VirusScanResult.CLEAN:
            return self
        security = self.security_info.model_copy(update={
            "virus_scan_result": result,
            "virus_scan_date": scanned_at or utc_now(),
        })
        if result == VirusScanResult.INFECTED:
            status = DocumentStatus.FAILED_VALIDATION
        elif result == VirusScanResult.CLEAN and security.is_encrypted:
            status = DocumentStatus.VALIDATED
        else:
            status = DocumentStatus.PROCESSING
        return self._evolve(security_info=security, status=status)

    def archive(self, now: Optional[datetime] = None) -> "Document":
        if self.status == DocumentStatus.ARCHIVED:
            return self
        if self.status != DocumentStatus.VALIDATED and not self.is_expired(now):
            raise DocumentStateError(str(self.id), self.status, "archive")
        return self._evolve(status=DocumentStatus.ARCHIVED)

    def reassign(self, patient_id: PatientId) -> "Document":
        return self._evolve(patient_id=patient_id)


class DocumentUpload(BaseModel):
    """Caller-supplied description of a new document (validated by ``validate_upload``)."""

    title: str = ""
    description: Optional[str] = None
    document_type: DocumentType = DocumentType.OTHER
    tags: tuple[str, ...] = ()
    is_confidential: bool = False
    retention_period_years: Optional[int] = None
    legal_basis: Optional[str] = None

    def to_metadata(self) -> DocumentMetadata:
        return DocumentMetadata(
            title=self.title,
            description=self.description,
            document_type=self.document_type,
            tags=self.tags,
            is_confidential=self.is_confidential,
            retention_period_years=self.retention_period_years,
            legal_basis=self.legal_basis,
        )


@dataclass(frozen=True)
class FileUpload:
    """Raw file bytes handed over by the outer layer."""
    file_name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        suffix = PurePosixPath(self.file_name).suffix.lower().lstrip(".")
        return suffix or "bin"


@dataclass(frozen=True)
class DocumentValidationReport:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_upload(
    file: FileUpload,
    upload: DocumentUpload,
    max_file_size: int = MAX_FILE_SIZE,
    allowed_mime_types: frozenset = ALLOWED_MIME_TYPES
) -> DocumentValidationReport:
    """Check an upload against every document rule and report all failures."""
    errors: list[str] = []
    warnings: list[str] = []
    max_file_size = min(max_file_size, MAX_FILE_SIZE)

    if file.content_type not in allowed_mime_types:
        errors.append(f"Unsupported file type: {file.content_type}")
    if file.size > max_file_size:
        errors.append(f"File size exceeds maximum allowed size of {max_file_size} bytes (too large)")
    elif file.size > LARGE_FILE_WARNING_SIZE:
        warnings.append("Large file detected, processing may take longer")
    if file.size == 0:
        errors.append("File is empty")
    if not file.file_name or not file.file_name.strip():
        errors.append("File name is required")
    if not upload.title or not upload.title.strip():
        errors.append("Document title is required")
    elif len(upload.title.strip()) > 255:
        errors.append("Document title cannot exceed 255 characters")
    if upload.retention_period_years is not None and not 1 <= upload.retention_period_years <= 100:
        errors.append("Retention period must be between 1 and 100 years")

    return DocumentValidationReport(is_valid=not errors, errors=errors, warnings=warnings)


def build_file_path(
    patient_id: PatientId,
    document_id: DocumentId,
    version: int,
    extension: str,
    now: Optional[datetime] = None
) -> str:
    """Blob path ``{patient}/{document}/v{n}_{millis}.{ext}``."""
    stamp = int((now or utc_now()).timestamp() * 1000)
    return f"{patient_id}/{document_id}/v{version}_{stamp}.{extension}"


def parse_document_id(file_path: str) -> DocumentId:
    """Extract the document id embedded in a blob path."""
    parts = file_path.strip("/").split("/")
    if len(parts) < 3:
        raise ValueError(f"Malformed document path: {file_path}")
    return DocumentId(parts[1])
