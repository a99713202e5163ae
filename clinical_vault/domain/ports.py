"""Domain Ports - Abstract Contracts for Persistence and Collaborators.

This module defines the Port interfaces (abstract contracts) that Adapters must
implement. Following Hexagonal Architecture, the Domain Core defines what it
needs, not how it's provided.

Security Impact:
    - The storage port owns referential integrity: every dependent write is
      checked against an existing patient in the same critical section
    - Audit writes return ``Result`` so they can never raise into the business
      operation they describe
    - Collaborators (tenant directory, key provider, virus scanner) are black
      boxes injected by the composition root

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Adapters (in-memory, DuckDB, filesystem, ...) implement these ports
    - Domain services depend only on ports, never on concrete adapters
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Optional, TypeVar, Union

from clinical_vault.domain.audit_models import AuditLogEntry, AuditLogFilter
from clinical_vault.domain.compliance_models import ConsentRecord
from clinical_vault.domain.document import Document, EncryptionMetadata
from clinical_vault.domain.enums import AccessResult, PatientStatus, VirusScanResult
from clinical_vault.domain.errors import (  # noqa: F401  (re-exported)
    AccessDeniedError,
    ClinicalVaultError,
    ComplianceError,
    ConcurrencyConflictError,
    DocumentNotFoundError,
    DocumentStateError,
    DocumentValidationError,
    DuplicatePatientError,
    EncryptionError,
    InvalidStatusTransitionError,
    MedicalRecordNotFoundError,
    NotFoundError,
    PatientNotFoundError,
    ReferentialIntegrityError,
    StorageError,
    UnsupportedExportFormatError,
    ValidationError,
)
from clinical_vault.domain.identifiers import DocumentId, MedicalRecordId, PatientId
from clinical_vault.domain.medical_record import MedicalRecord
from clinical_vault.domain.patient import Patient
from clinical_vault.domain.status import StatusTransition

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Used where a caller must never see an exception (audit writes, schema
    initialization) and by the fallible factories, which put every violated
    rule into ``error_details["violations"]``.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (ValidationError, StorageError, etc.)
        error_details: Additional error context (violations, operation, etc.)

    Example:
        ```python
        result = build(CPF, "111.444.777-35")
        if result.is_success():
            cpf = result.value
        else:
            for violation in result.error_details["violations"]:
                print(violation["field"], violation["code"])
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "ValidationError", "StorageError")
            error_details: Additional context (violations, operation, etc.)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# ============================================================================
# Storage Port (Referential-Integrity Repository Layer)
# ============================================================================

class StoragePort(ABC):
    """Abstract contract for clinical persistence.

    Implementations must:
        - Run every dependent write (medical record, document, status
          transition, consent) as one unit with the existence check of its
          patient; a missing or logically deleted patient raises
          ``ReferentialIntegrityError`` and nothing is written
        - Never leave orphans after ``cascade_delete_patient`` or
          ``merge_patients``
        - Honor optimistic version checks (``expected_updated_at`` for
          patients and medical records, ``expected_version`` for documents)
        - Wrap backend failures in ``StorageError`` with the operation name
        - Return entities equal field-for-field to what was saved
    """

    # -- lifecycle -----------------------------------------------------------

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        """Create tables/structures if they do not exist."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def count_entities(self) -> dict[str, int]:
        """Row counts per table (used by health checks)."""
        pass

    # -- patients ------------------------------------------------------------

    @abstractmethod
    def save_patient(self, patient: Patient, expected_updated_at: Optional[datetime] = None) -> Patient:
        """Insert or update a patient.

        Raises:
            ConcurrencyConflictError: If ``expected_updated_at`` is given and
                differs from the stored value
        """
        pass

    @abstractmethod
    def get_patient(self, patient_id: PatientId, include_deleted: bool = False) -> Optional[Patient]:
        pass

    @abstractmethod
    def patient_exists(self, patient_id: PatientId) -> bool:
        """True when the patient is stored and not logically deleted."""
        pass

    @abstractmethod
    def list_patients(
        self,
        status: Optional[PatientStatus] = None,
        include_deleted: bool = False
    ) -> list[Patient]:
        pass

    @abstractmethod
    def find_potential_duplicates(self, full_name: str, date_of_birth, cpf: Optional[str] = None) -> list[Patient]:
        """Non-deleted patients sharing the CPF digits, or the DOB, or the
        case-insensitive full name of the candidate."""
        pass

    @abstractmethod
    def cascade_delete_patient(self, patient_id: PatientId) -> dict[str, int]:
        """Physically remove a patient and every dependent row.

        Returns:
            Deleted row counts per table
        """
        pass

    @abstractmethod
    def merge_patients(
        self,
        merged_primary: Patient,
        duplicate_id: PatientId,
        expected_updated_at: Optional[datetime] = None
    ) -> dict[str, int]:
        """Save ``merged_primary``, reassign the duplicate's records, documents
        and consents to it, drop the duplicate's ledger and delete the
        duplicate, all as one unit.

        Raises:
            ConcurrencyConflictError: If the stored primary changed since
                ``expected_updated_at``

        Returns:
            Reassigned/deleted row counts
        """
        pass

    # -- medical records -----------------------------------------------------

    @abstractmethod
    def save_medical_record(
        self,
        record: MedicalRecord,
        expected_updated_at: Optional[datetime] = None
    ) -> MedicalRecord:
        pass

    @abstractmethod
    def get_medical_record(self, record_id: MedicalRecordId) -> Optional[MedicalRecord]:
        pass

    @abstractmethod
    def list_medical_records(self, patient_id: PatientId) -> list[MedicalRecord]:
        pass

    # -- documents -----------------------------------------------------------

    @abstractmethod
    def save_document(self, document: Document, expected_version: Optional[int] = None) -> Document:
        pass

    @abstractmethod
    def get_document(self, document_id: DocumentId) -> Optional[Document]:
        pass

    @abstractmethod
    def list_documents(self, patient_id: Optional[PatientId] = None) -> list[Document]:
        pass

    @abstractmethod
    def delete_document(self, document_id: DocumentId) -> bool:
        """Remove a document row and its encryption metadata."""
        pass

    @abstractmethod
    def save_encryption_metadata(self, metadata: EncryptionMetadata) -> None:
        pass

    @abstractmethod
    def get_encryption_metadata(self, document_id: DocumentId, file_path: str) -> Optional[EncryptionMetadata]:
        pass

    @abstractmethod
    def list_encryption_metadata(self, document_id: DocumentId) -> list[EncryptionMetadata]:
        pass

    @abstractmethod
    def delete_encryption_metadata(self, document_id: DocumentId, file_path: Optional[str] = None) -> int:
        pass

    # -- status ledger -------------------------------------------------------

    @abstractmethod
    def append_status_transition(self, transition: StatusTransition) -> StatusTransition:
        pass

    @abstractmethod
    def apply_status_change(
        self,
        patient: Patient,
        transition: StatusTransition,
        expected_updated_at: Optional[datetime] = None
    ) -> Patient:
        """Save the patient and append the ledger row atomically."""
        pass

    @abstractmethod
    def list_status_transitions(
        self,
        patient_id: Optional[PatientId] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> list[StatusTransition]:
        """Ledger rows in chronological order."""
        pass

    # -- consents ------------------------------------------------------------

    @abstractmethod
    def save_consent(self, consent: ConsentRecord) -> ConsentRecord:
        pass

    @abstractmethod
    def list_consents(self, patient_id: PatientId) -> list[ConsentRecord]:
        pass

    # -- audit log -----------------------------------------------------------

    @abstractmethod
    def append_audit_entry(self, entry: AuditLogEntry) -> Result[str]:
        """Append one write-once audit entry. Never raises."""
        pass

    @abstractmethod
    def query_audit_entries(self, audit_filter: AuditLogFilter) -> tuple[list[AuditLogEntry], int]:
        """Filtered, sorted, paginated entries plus the unpaginated total."""
        pass

    @abstractmethod
    def delete_audit_entries_before(self, cutoff: datetime) -> int:
        pass

    # -- consistency ---------------------------------------------------------

    @abstractmethod
    def find_orphans(self) -> dict[str, list[str]]:
        """Ids of dependents whose patient row no longer exists, per table."""
        pass


# ============================================================================
# Collaborator Ports
# ============================================================================

class BlobStorePort(ABC):
    """Opaque byte storage addressed by path."""

    @abstractmethod
    def put(self, path: str, data: bytes) -> None:
        pass

    @abstractmethod
    def get(self, path: str) -> bytes:
        """Raises ``KeyError`` when the path does not exist."""
        pass

    @abstractmethod
    def delete(self, path: str) -> bool:
        pass

    @abstractmethod
    def exists(self, path: str) -> bool:
        pass


class TenantDirectoryPort(ABC):
    """Answers "does user U share a tenant with patient P, and what is U's role?"."""

    @abstractmethod
    def shares_tenant(self, user_id: str, patient_id: str) -> bool:
        pass

    @abstractmethod
    def get_role(self, user_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def get_tenant_for_patient(self, patient_id: str) -> Optional[str]:
        pass


class KeyProviderPort(ABC):
    """Supplies the master encryption key."""

    @abstractmethod
    def get_master_key(self) -> bytes:
        pass

    @property
    @abstractmethod
    def key_id(self) -> str:
        pass


class VirusScannerPort(ABC):

    @abstractmethod
    def scan(self, data: bytes) -> VirusScanResult:
        pass


class AuditTrailPort(ABC):
    """What domain services need from the audit engine.

    Implementations must never raise: failures degrade to a ``Result`` failure
    and an operational alert.
    """

    @abstractmethod
    def log_data_access(
        self,
        user_id: str,
        operation: str,
        data_type: str,
        patient_id: Optional[str] = None,
        access_result: AccessResult = AccessResult.GRANTED,
        old_values=None,
        new_values=None,
        justification: Optional[str] = None,
        context=None
    ) -> Result[str]:
        pass
