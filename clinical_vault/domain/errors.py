"""Domain Error Hierarchy.

Every error raised by the core derives from ``ClinicalVaultError`` and carries
a human readable message plus a ``details`` dictionary with identifiers only
(never PII), so errors can be logged and audited safely.

Security Impact:
    - "Not found" and "access denied" are distinct types so the audit trail can
      record them differently
    - Error details carry identifiers, never personal data
"""

from typing import Any, Optional


class ClinicalVaultError(Exception):
    """Base exception for all clinical-vault errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(ClinicalVaultError):
    """Raised when input fails domain validation.

    Attributes:
        field: Dotted path of the first offending field (if known)
        violations: Every violated rule as ``{"field", "code", "message"}``
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        violations: Optional[list] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, details)
        self.field = field
        self.violations = violations or []

    @property
    def codes(self) -> list[str]:
        return [v["code"] for v in self.violations]


class DocumentValidationError(ValidationError):
    """Raised when an upload breaks one or more document rules.

    ``errors`` lists every broken rule, ``warnings`` non-blocking findings.
    """

    def __init__(self, errors: list[str], warnings: Optional[list[str]] = None):
        super().__init__(
            "Document validation failed: " + "; ".join(errors),
            violations=[{"field": "file", "code": "document_invalid", "message": e} for e in errors],
        )
        self.errors = errors
        self.warnings = warnings or []


class UnsupportedExportFormatError(ValidationError):
    def __init__(self, export_format: str):
        super().__init__(f"Unsupported export format: {export_format}", field="format")
        self.export_format = export_format


class ReferentialIntegrityError(ClinicalVaultError):
    """Raised when a dependent write references a patient that does not exist."""

    def __init__(self, entity_type: str, patient_id: str, operation: Optional[str] = None):
        super().__init__(
            f"Cannot {operation or 'write'} {entity_type}: patient {patient_id} does not exist",
            details={"entity_type": entity_type, "patient_id": patient_id},
        )
        self.entity_type = entity_type
        self.patient_id = patient_id


class NotFoundError(ClinicalVaultError):
    entity_type = "entity"

    def __init__(self, entity_id: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{self.entity_type.replace('_', ' ').capitalize()} {entity_id} not found",
            details={"entity_type": self.entity_type, "entity_id": str(entity_id)},
        )
        self.entity_id = str(entity_id)


class PatientNotFoundError(NotFoundError):
    entity_type = "patient"
    code = "PATIENT_NOT_FOUND"


class MedicalRecordNotFoundError(NotFoundError):
    entity_type = "medical_record"


class DocumentNotFoundError(NotFoundError):
    entity_type = "document"


class AccessDeniedError(ClinicalVaultError):
    """Raised when an actor may not touch an existing resource."""

    def __init__(self, message: str, user_id: Optional[str] = None, patient_id: Optional[str] = None):
        super().__init__(message, details={"user_id": user_id, "patient_id": patient_id})
        self.user_id = user_id
        self.patient_id = patient_id


class InvalidStatusTransitionError(ClinicalVaultError):
    def __init__(self, from_status: Any, to_status: Any):
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        super().__init__(
            f"Invalid status transition from {from_value} to {to_value}",
            details={"from_status": from_value, "to_status": to_value},
        )
        self.from_status = from_status
        self.to_status = to_status


class DuplicatePatientError(ClinicalVaultError):
    """Raised when registration finds a high-confidence duplicate.

    Attributes:
        detection: The ``DuplicateDetectionResult`` that triggered the refusal
    """
    code = "DUPLICATE_PATIENT"

    def __init__(self, detection: Any):
        super().__init__(
            "A patient with similar information already exists",
            details={"duplicates": [str(p.id) for p in detection.potential_duplicates]},
        )
        self.detection = detection


class ConcurrencyConflictError(ClinicalVaultError):
    """Raised when an optimistic version check fails."""

    def __init__(self, entity_type: str, entity_id: str, expected: Any, actual: Any):
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}",
            details={"expected": str(expected), "actual": str(actual)},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class EncryptionError(ClinicalVaultError):
    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.operation = operation


class StorageError(ClinicalVaultError):
    """Raised when a backend operation fails.

    Attributes:
        operation: Storage operation that failed (e.g. ``save_patient``)
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details)
        self.operation = operation


class ComplianceError(ClinicalVaultError):
    pass


class DocumentStateError(ClinicalVaultError):
    """Raised when a document lifecycle step is not allowed from its current status."""

    def __init__(self, document_id: str, status: Any, action: str):
        status_value = getattr(status, "value", status)
        super().__init__(
            f"Cannot {action} document {document_id} in status {status_value}",
            details={"document_id": document_id, "status": status_value},
        )
        self.document_id = document_id
        self.status = status
