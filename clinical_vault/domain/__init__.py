"""Domain layer for Clinical Vault.

This module contains the patient, clinical record, document, compliance and
audit models. Domain models are pure Python with no external dependencies
beyond Pydantic.
"""

from .identifiers import DocumentId, MedicalRecordId, PatientId, UserId
from .medical_record import MedicalRecord, TimelineEvent
from .patient import Patient
from .status import StatusTransition

__all__ = [
    "DocumentId",
    "MedicalRecordId",
    "PatientId",
    "UserId",
    "MedicalRecord",
    "TimelineEvent",
    "Patient",
    "StatusTransition",
]
