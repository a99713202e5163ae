"""Patient aggregate root.

A ``Patient`` is an immutable snapshot. Every domain operation returns a new
instance with a refreshed ``updated_at``; identity (``id``) never changes.

Security Impact:
    - Personal data lives only in validated value objects
    - ``deleted_at`` marks logical deletion so retention obligations are met
      without physically erasing the record
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_vault.domain.enums import PatientStatus
from clinical_vault.domain.identifiers import PatientId, UserId
from clinical_vault.domain.status import can_transition
from clinical_vault.domain.errors import InvalidStatusTransitionError
from clinical_vault.domain.utils import ensure_utc, utc_now
from clinical_vault.domain.value_objects import (
    ContactInformation,
    EmergencyContact,
    InsuranceInformation,
    PersonalInformation,
)

SCHEDULABLE_STATUSES = frozenset({PatientStatus.NEW, PatientStatus.ACTIVE, PatientStatus.ON_HOLD})


class Patient(BaseModel):
    """Registered patient of the practice.

    Attributes:
        id: Stable patient identifier
        personal_info: Name, birth date, gender, CPF and RG
        contact_info: Phones, email and address
        emergency_contact: Optional emergency contact
        insurance_info: Optional health-insurance details
        status: Current lifecycle status
        created_at / updated_at: Aware UTC timestamps
        created_by: Actor that registered the patient
        deleted_at: Set when the patient was logically deleted
    """

    model_config = ConfigDict(frozen=True)

    id: PatientId = Field(default_factory=PatientId.generate)
    personal_info: PersonalInformation
    contact_info: ContactInformation
    emergency_contact: Optional[EmergencyContact] = None
    insurance_info: Optional[InsuranceInformation] = None
    status: PatientStatus = PatientStatus.NEW
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    created_by: UserId
    deleted_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at", "deleted_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_active(self) -> bool:
        return self.status == PatientStatus.ACTIVE

    def can_schedule_appointment(self) -> bool:
        return not self.is_deleted and self.status in SCHEDULABLE_STATUSES

    def evolve(self, **changes: Any) -> "Patient":
        """Return a re-validated copy with ``changes`` applied and a fresh ``updated_at``."""
        data = dict(self)
        data.update(changes)
        data["id"] = self.id
        data["updated_at"] = utc_now()
        return type(self).model_validate(data)

    def update_personal_info(self, personal_info: PersonalInformation) -> "Patient":
        return self.evolve(personal_info=personal_info)

    def update_contact_info(self, contact_info: ContactInformation) -> "Patient":
        return self.evolve(contact_info=contact_info)

    def update_emergency_contact(self, emergency_contact: Optional[EmergencyContact]) -> "Patient":
        return self.evolve(emergency_contact=emergency_contact)

    def update_insurance_info(self, insurance_info: Optional[InsuranceInformation]) -> "Patient":
        return self.evolve(insurance_info=insurance_info)

    def change_status(self, new_status: PatientStatus) -> "Patient":
        """Move to ``new_status`` or raise ``InvalidStatusTransitionError``."""
        new_status = PatientStatus(new_status)
        if not can_transition(self.status, new_status):
            raise InvalidStatusTransitionError(self.status, new_status)
        return self.evolve(status=new_status)

    def mark_deleted(self) -> "Patient":
        now = utc_now()
        return self.evolve(deleted_at=now)
