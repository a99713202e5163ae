"""Patient status state machine and ledger rows.

The adjacency table below is the single source of truth for which status
changes are legal. ``StatusTransition`` rows are append-only and never updated.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_vault.domain.enums import PatientStatus
from clinical_vault.domain.identifiers import PatientId, UserId
from clinical_vault.domain.utils import ensure_utc, utc_now

ALLOWED_TRANSITIONS: dict[PatientStatus, frozenset] = {
    PatientStatus.NEW: frozenset({PatientStatus.ACTIVE, PatientStatus.INACTIVE}),
    PatientStatus.ACTIVE: frozenset({
        PatientStatus.ON_HOLD, PatientStatus.DISCHARGED, PatientStatus.INACTIVE,
    }),
    PatientStatus.ON_HOLD: frozenset({
        PatientStatus.ACTIVE, PatientStatus.DISCHARGED, PatientStatus.INACTIVE,
    }),
    PatientStatus.DISCHARGED: frozenset({PatientStatus.ACTIVE}),
    PatientStatus.INACTIVE: frozenset({PatientStatus.ACTIVE}),
}


def allowed_transitions(current: PatientStatus) -> frozenset:
    return ALLOWED_TRANSITIONS.get(PatientStatus(current), frozenset())


def can_transition(current: PatientStatus, target: PatientStatus) -> bool:
    return PatientStatus(target) in allowed_transitions(current)


class StatusTransition(BaseModel):
    """One row of the patient status ledger.

    ``from_status`` is ``None`` only for the initial registration row.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    patient_id: PatientId
    from_status: Optional[PatientStatus] = None
    to_status: PatientStatus
    reason: str = ""
    changed_by: UserId
    changed_at: datetime = Field(default_factory=utc_now)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = (v or "").strip()
        if len(v) > 500:
            raise ValueError("Reason cannot exceed 500 characters")
        return v

    @field_validator("changed_at")
    @classmethod
    def normalize_changed_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def pattern_key(self) -> str:
        from_value = self.from_status.value if self.from_status else "none"
        return f"{from_value}->{self.to_status.value}"
