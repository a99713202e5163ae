"""LGPD compliance models: consent records, access decisions and reports."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_vault.domain.enums import ConsentType, DataOperation, LegalBasis
from clinical_vault.domain.identifiers import PatientId, UserId
from clinical_vault.domain.utils import ensure_utc, utc_now


class ConsentRecord(BaseModel):
    """A patient's consent (or its withdrawal) for one processing purpose."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: PatientId
    consent_type: ConsentType
    legal_basis: LegalBasis = LegalBasis.CONSENT
    purpose: str
    granted: bool = True
    granted_at: datetime = Field(default_factory=utc_now)
    withdrawn_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    recorded_by: UserId
    version: int = Field(default=1, ge=1)

    @field_validator("purpose")
    @classmethod
    def validate_purpose(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("Consent purpose cannot be empty")
        if len(v) > 500:
            raise ValueError("Consent purpose cannot exceed 500 characters")
        return v

    @field_validator("granted_at", "withdrawn_at", "expires_at")
    @classmethod
    def normalize_dates(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def is_withdrawn(self) -> bool:
        return self.withdrawn_at is not None

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        if not self.granted or self.is_withdrawn:
            return False
        return self.expires_at is None or self.expires_at > now

    def withdraw(self, when: Optional[datetime] = None) -> "ConsentRecord":
        return self.model_copy(update={
            "granted": False,
            "withdrawn_at": when or utc_now(),
            "version": self.version + 1,
        })

    def reassign(self, patient_id: PatientId) -> "ConsentRecord":
        return self.model_copy(update={"patient_id": patient_id})


class AccessDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str
    user_id: str
    patient_id: str
    operation: DataOperation
    requires_consent: bool = False


class DataDeletionReport(BaseModel):
    patient_id: str
    requested_by: str
    reason: str
    deleted_counts: dict[str, int]
    completed_at: datetime = Field(default_factory=utc_now)
    audit_trail_preserved: bool = True


class IncidentReport(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    description: str
    affected_patient_ids: list[str] = Field(default_factory=list)
    severity: str = "high"
    reported_by: str
    detected_at: datetime = Field(default_factory=utc_now)
    notification_required: bool = True

    @field_validator("severity")
    @classmethod
    def validate_severity(cls, v: str) -> str:
        v = v.lower()
        if v not in {"low", "medium", "high", "critical"}:
            raise ValueError(f"Invalid incident severity: {v}")
        return v
