"""Domain Services.

This package contains the domain services that implement the clinical
business workflows on top of the storage and audit ports.
"""

from clinical_vault.domain.services.compliance_engine import ComplianceEngine, PatientDataExport
from clinical_vault.domain.services.medical_record_manager import (
    ClinicalIntegrityReport,
    IntegrityCheckResult,
    MedicalRecordManager,
)
from clinical_vault.domain.services.patient_registry import (
    DuplicateDetectionResult,
    MergePlan,
    PatientRegistration,
    PatientRegistry,
    PatientSearchCriteria,
    PatientSearchResult,
    PatientUpdate,
)
from clinical_vault.domain.services.status_tracker import StatusStatistics, StatusTracker, TransitionPattern

__all__ = [
    'ComplianceEngine',
    'PatientDataExport',
    'ClinicalIntegrityReport',
    'IntegrityCheckResult',
    'MedicalRecordManager',
    'DuplicateDetectionResult',
    'MergePlan',
    'PatientRegistration',
    'PatientRegistry',
    'PatientSearchCriteria',
    'PatientSearchResult',
    'PatientUpdate',
    'StatusStatistics',
    'StatusTracker',
    'TransitionPattern',
]
