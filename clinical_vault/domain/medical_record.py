"""Medical record entity and chronological timeline view.

A ``MedicalRecord`` belongs to exactly one patient (by id) and holds ordered,
append-only collections of clinical values. All ``add_*`` operations return a
new record; nothing is ever removed in place.
"""

from datetime import date, datetime, time, timezone
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from clinical_vault.domain.clinical_values import (
    Allergy,
    Assessment,
    Diagnosis,
    Medication,
    ProgressNote,
    TreatmentHistory,
    TreatmentPlan,
)
from clinical_vault.domain.enums import TimelineEventType
from clinical_vault.domain.identifiers import MedicalRecordId, PatientId
from clinical_vault.domain.utils import ensure_utc, utc_now


class MedicalRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: MedicalRecordId = Field(default_factory=MedicalRecordId.generate)
    patient_id: PatientId
    diagnoses: tuple[Diagnosis, ...] = ()
    treatment_history: tuple[TreatmentHistory, ...] = ()
    medications: tuple[Medication, ...] = ()
    allergies: tuple[Allergy, ...] = ()
    progress_notes: tuple[ProgressNote, ...] = ()
    assessments: tuple[Assessment, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def _append(self, collection: str, item) -> "MedicalRecord":
        return self.model_copy(update={
            collection: getattr(self, collection) + (item,),
            "updated_at": utc_now(),
        })

    def add_diagnosis(self, diagnosis: Diagnosis) -> "MedicalRecord":
        return self._append("diagnoses", diagnosis)

    def add_medication(self, medication: Medication) -> "MedicalRecord":
        return self._append("medications", medication)

    def add_allergy(self, allergy: Allergy) -> "MedicalRecord":
        return self._append("allergies", allergy)

    def add_progress_note(self, note: ProgressNote) -> "MedicalRecord":
        return self._append("progress_notes", note)

    def add_assessment(self, assessment: Assessment) -> "MedicalRecord":
        return self._append("assessments", assessment)

    def update_treatment_plan(self, plan: TreatmentPlan) -> "MedicalRecord":
        """Record a new plan as a treatment-history entry."""
        return self._append("treatment_history", plan.to_history_entry())

    def reassign(self, patient_id: PatientId) -> "MedicalRecord":
        return self.model_copy(update={"patient_id": patient_id, "updated_at": utc_now()})

    def latest_assessment(self) -> Optional[Assessment]:
        if not self.assessments:
            return None
        return max(self.assessments, key=lambda a: a.date)

    def active_medications(self) -> list[Medication]:
        return [m for m in self.medications if m.is_active()]

    def timeline(self) -> list["TimelineEvent"]:
        return build_timeline([self])


class TimelineEvent(BaseModel):
    """Single entry of a patient's chronological history."""

    model_config = ConfigDict(frozen=True)

    event_type: TimelineEventType
    occurred_at: datetime
    description: str
    record_id: MedicalRecordId


def _as_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"Unsupported timeline timestamp: {type(value).__name__}")


def _record_events(record: MedicalRecord) -> Iterable[TimelineEvent]:
    rid = record.id
    for d in record.diagnoses:
        yield TimelineEvent(event_type=TimelineEventType.DIAGNOSIS, occurred_at=_as_datetime(d.diagnosed_at),
                            description=f"Diagnosis: {d.code} - {d.description}", record_id=rid)
    for t in record.treatment_history:
        yield TimelineEvent(event_type=TimelineEventType.TREATMENT, occurred_at=_as_datetime(t.start_date),
                            description=f"Treatment: {t.description}", record_id=rid)
    for n in record.progress_notes:
        yield TimelineEvent(event_type=TimelineEventType.PROGRESS_NOTE, occurred_at=_as_datetime(n.session_date),
                            description=f"Progress note ({n.category.value})", record_id=rid)
    for a in record.assessments:
        yield TimelineEvent(event_type=TimelineEventType.ASSESSMENT, occurred_at=_as_datetime(a.date),
                            description=f"Assessment: {a.type}", record_id=rid)
    for m in record.medications:
        yield TimelineEvent(event_type=TimelineEventType.MEDICATION, occurred_at=_as_datetime(m.start_date),
                            description=f"Medication: {m.name} {m.dosage}", record_id=rid)
    for al in record.allergies:
        yield TimelineEvent(event_type=TimelineEventType.ALLERGY, occurred_at=_as_datetime(al.diagnosed_at),
                            description=f"Allergy: {al.allergen}", record_id=rid)


def build_timeline(records: Iterable[MedicalRecord]) -> list[TimelineEvent]:
    """Flatten records into one event per clinical item, oldest first.

    The sort is stable, so events sharing a timestamp keep insertion order.
    """
    events = [event for record in records for event in _record_events(record)]
    return sorted(events, key=lambda e: e.occurred_at)
