"""Domain Enumerations.

Closed value sets used by the clinical domain model. Every enum derives from
``str`` so values serialize transparently to JSON and to storage columns.
"""

from enum import Enum


class PatientStatus(str, Enum):
    """Lifecycle status of a patient in the practice."""
    NEW = "new"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    DISCHARGED = "discharged"
    INACTIVE = "inactive"


class Gender(str, Enum):
    """Self-declared gender."""
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer_not_to_say"


class DiagnosisSeverity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    UNKNOWN = "unknown"


class AllergySeverity(str, Enum):
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"
    LIFE_THREATENING = "life_threatening"


class ProgressNoteCategory(str, Enum):
    ASSESSMENT = "assessment"
    TREATMENT = "treatment"
    OBSERVATION = "observation"
    GOAL_PROGRESS = "goal_progress"


class TimelineEventType(str, Enum):
    """Kinds of events shown in a patient's chronological timeline."""
    DIAGNOSIS = "diagnosis"
    TREATMENT = "treatment"
    PROGRESS_NOTE = "progress_note"
    ASSESSMENT = "assessment"
    MEDICATION = "medication"
    ALLERGY = "allergy"


class DocumentType(str, Enum):
    MEDICAL_REPORT = "medical_report"
    PRESCRIPTION = "prescription"
    EXAM_RESULT = "exam_result"
    INSURANCE_CARD = "insurance_card"
    IDENTIFICATION = "identification"
    CONSENT_FORM = "consent_form"
    TREATMENT_PLAN = "treatment_plan"
    PROGRESS_NOTE = "progress_note"
    OTHER = "other"


class DocumentStatus(str, Enum):
    """Processing lifecycle of an uploaded document."""
    UPLOADING = "uploading"
    PROCESSING = "processing"
    VALIDATED = "validated"
    FAILED_VALIDATION = "failed_validation"
    ARCHIVED = "archived"


class VirusScanResult(str, Enum):
    CLEAN = "clean"
    INFECTED = "infected"
    PENDING = "pending"


class AccessResult(str, Enum):
    """Outcome recorded on every audit entry."""
    GRANTED = "granted"
    DENIED = "denied"
    PARTIAL = "partial"


class DuplicateConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MergeStrategy(str, Enum):
    """Which side of a merge wins for a section of patient data."""
    PRIMARY = "primary"
    DUPLICATE = "duplicate"


class ConsentType(str, Enum):
    DATA_PROCESSING = "data_processing"
    DATA_SHARING = "data_sharing"
    MARKETING = "marketing"
    RESEARCH = "research"
    AUTOMATED_DECISION_MAKING = "automated_decision_making"


class LegalBasis(str, Enum):
    """LGPD legal bases for processing personal data."""
    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTERESTS = "vital_interests"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTERESTS = "legitimate_interests"


class DataOperation(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"
    SHARE = "share"


class LgpdEvent(str, Enum):
    """Data-protection events recorded in the audit trail."""
    CONSENT_GRANTED = "consent_granted"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    DATA_EXPORT = "data_export"
    DATA_DELETION = "data_deletion"
    BREACH_DETECTED = "breach_detected"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"
    XML = "xml"
