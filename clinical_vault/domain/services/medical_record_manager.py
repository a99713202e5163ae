"""Medical Record Manager.

Creates medical records for existing patients, appends clinical entries
(diagnoses, medications, allergies, progress notes, assessments, treatment
plans) and builds the chronological timeline of a patient.

Security Impact:
    - A record can only be created or changed while its patient exists; the
      storage layer checks this in the same unit as the write
    - Every read with an actor and every change is audited

Architecture:
    - Pure domain service depending only on StoragePort and AuditTrailPort
    - Records are immutable; each change saves a new snapshot guarded by an
      optimistic ``updated_at`` check
"""

import logging
import re
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from pydantic import BaseModel, Field

from clinical_vault.domain.clinical_values import (
    Allergy,
    Assessment,
    Diagnosis,
    Medication,
    ProgressNote,
    TreatmentHistory,
    TreatmentPlan,
)
from clinical_vault.domain.errors import MedicalRecordNotFoundError, PatientNotFoundError
from clinical_vault.domain.identifiers import MedicalRecordId, PatientId, UserId
from clinical_vault.domain.medical_record import MedicalRecord, TimelineEvent, build_timeline
from clinical_vault.domain.ports import AuditTrailPort, StoragePort
from clinical_vault.domain.utils import utc_now

logger = logging.getLogger(__name__)

DATA_TYPE = "medical_record"

_ICD10_PATTERN = re.compile(r"^[A-Z][0-9]{2}(\.[0-9A-Z]{1,4})?$")


class IntegrityCheckResult(BaseModel):
    check_type: str
    status: str
    message: str
    details: list[str] = Field(default_factory=list)


class ClinicalIntegrityReport(BaseModel):
    """Result of the consistency checks run over one medical record."""
    patient_id: str
    record_id: str
    checks: list[IntegrityCheckResult]
    overall_status: str
    checked_at: datetime = Field(default_factory=utc_now)


class MedicalRecordManager:
    """Service for clinical history.

    Example Usage:
        ```python
        manager = MedicalRecordManager(storage, audit_logger)
        record = manager.create_medical_record(patient_id, actor=user_id)
        record = manager.add_progress_note(record.id, note, actor=user_id)
        events = manager.get_timeline(patient_id)
        ```
    """

    def __init__(self, storage: StoragePort, audit: Optional[AuditTrailPort] = None):
        self._storage = storage
        self._audit = audit

    def _log(self, actor, operation: str, patient_id, **kwargs) -> None:
        if self._audit is None or actor is None:
            return
        self._audit.log_data_access(
            user_id=str(actor),
            operation=operation,
            data_type=DATA_TYPE,
            patient_id=str(patient_id),
            **kwargs
        )

    def _require(self, record_id: Union[MedicalRecordId, str]) -> MedicalRecord:
        try:
            rid = MedicalRecordId.coerce(record_id)
        except ValueError as e:
            raise MedicalRecordNotFoundError(record_id) from e
        record = self._storage.get_medical_record(rid)
        if record is None:
            raise MedicalRecordNotFoundError(rid)
        return record

    def _require_patient_id(self, patient_id: Union[PatientId, str]) -> PatientId:
        try:
            pid = PatientId.coerce(patient_id)
        except ValueError as e:
            raise PatientNotFoundError(patient_id) from e
        if self._storage.get_patient(pid, include_deleted=True) is None:
            raise PatientNotFoundError(pid)
        return pid

    def _change(
        self,
        record_id: Union[MedicalRecordId, str],
        section: str,
        mutate: Callable[[MedicalRecord], MedicalRecord],
        actor: Union[UserId, str],
        item_id: Optional[str] = None
    ) -> MedicalRecord:
        record = self._require(record_id)
        updated = mutate(record)
        self._storage.save_medical_record(updated, expected_updated_at=record.updated_at)
        new_values = {"section": section, "count": len(getattr(updated, section))}
        if item_id:
            new_values["item_id"] = item_id
        self._log(actor, "update", record.patient_id, new_values=new_values)
        logger.debug(f"Medical record {record.id}: appended to {section}")
        return updated

    # ------------------------------------------------------------------
    # records
    # ------------------------------------------------------------------

    def create_medical_record(
        self,
        patient_id: Union[PatientId, str],
        actor: Union[UserId, str],
        diagnoses: Iterable[Diagnosis] = (),
        medications: Iterable[Medication] = (),
        allergies: Iterable[Allergy] = (),
        treatment_history: Iterable[TreatmentHistory] = ()
    ) -> MedicalRecord:
        """Create a record for an existing patient.

        Raises:
            ReferentialIntegrityError: If the patient does not exist or was
                deleted (nothing is written)
        """
        actor = UserId.coerce(actor)
        record = MedicalRecord(
            patient_id=PatientId.coerce(patient_id),
            diagnoses=tuple(diagnoses),
            medications=tuple(medications),
            allergies=tuple(allergies),
            treatment_history=tuple(treatment_history),
        )
        self._storage.save_medical_record(record)
        self._log(actor, "create", record.patient_id, new_values={
            "record_id": str(record.id),
            "diagnoses": len(record.diagnoses),
            "medications": len(record.medications),
            "allergies": len(record.allergies),
        })
        logger.info(f"Created medical record {record.id} for patient {record.patient_id}")
        return record

    def get_medical_record(
        self,
        record_id: Union[MedicalRecordId, str],
        actor: Optional[Union[UserId, str]] = None
    ) -> Optional[MedicalRecord]:
        try:
            rid = MedicalRecordId.coerce(record_id)
        except ValueError:
            return None
        record = self._storage.get_medical_record(rid)
        if record is not None:
            self._log(actor, "read", record.patient_id)
        return record

    def get_medical_history(
        self,
        patient_id: Union[PatientId, str],
        actor: Optional[Union[UserId, str]] = None
    ) -> list[MedicalRecord]:
        pid = self._require_patient_id(patient_id)
        records = self._storage.list_medical_records(pid)
        self._log(actor, "read", pid)
        return records

    # ------------------------------------------------------------------
    # clinical entries
    # ------------------------------------------------------------------

    def add_diagnosis(self, record_id, diagnosis: Diagnosis, actor) -> MedicalRecord:
        return self._change(record_id, "diagnoses", lambda r: r.add_diagnosis(diagnosis), actor)

    def add_medication(self, record_id, medication: Medication, actor) -> MedicalRecord:
        return self._change(record_id, "medications", lambda r: r.add_medication(medication), actor)

    def add_allergy(self, record_id, allergy: Allergy, actor) -> MedicalRecord:
        return self._change(record_id, "allergies", lambda r: r.add_allergy(allergy), actor)

    def add_progress_note(self, record_id, note: ProgressNote, actor) -> MedicalRecord:
        return self._change(
            record_id, "progress_notes", lambda r: r.add_progress_note(note), actor, item_id=note.id
        )

    def add_assessment(self, record_id, assessment: Assessment, actor) -> MedicalRecord:
        return self._change(
            record_id, "assessments", lambda r: r.add_assessment(assessment), actor, item_id=assessment.id
        )

    def update_treatment_plan(self, record_id, plan: TreatmentPlan, actor) -> MedicalRecord:
        """Record ``plan`` as the newest treatment-history entry."""
        return self._change(
            record_id, "treatment_history", lambda r: r.update_treatment_plan(plan), actor, item_id=plan.id
        )

    # ------------------------------------------------------------------
    # views
    # ------------------------------------------------------------------

    def get_timeline(
        self,
        patient_id: Union[PatientId, str],
        actor: Optional[Union[UserId, str]] = None
    ) -> list[TimelineEvent]:
        """Every clinical item of the patient, oldest first."""
        pid = self._require_patient_id(patient_id)
        events = build_timeline(self._storage.list_medical_records(pid))
        self._log(actor, "read", pid, justification="timeline")
        return events

    def check_record_integrity(self, record_id: Union[MedicalRecordId, str]) -> ClinicalIntegrityReport:
        """Run consistency checks over a record's clinical data."""
        record = self._require(record_id)
        checks = [
            _check_allergy_conflicts(record),
            _check_duplicate_medications(record),
            _check_diagnosis_codes(record),
        ]
        statuses = {c.status for c in checks}
        overall = "failed" if "failed" in statuses else "warning" if "warning" in statuses else "passed"
        if overall != "passed":
            logger.warning(f"Integrity check {overall} for medical record {record.id}")
        return ClinicalIntegrityReport(
            patient_id=str(record.patient_id),
            record_id=str(record.id),
            checks=checks,
            overall_status=overall,
        )


def _check_allergy_conflicts(record: MedicalRecord) -> IntegrityCheckResult:
    conflicts = [
        f"{medication.name} conflicts with allergy to {allergy.allergen}"
        for medication in record.active_medications()
        for allergy in record.allergies
        if allergy.allergen.lower() in medication.name.lower()
    ]
    if conflicts:
        return IntegrityCheckResult(
            check_type="allergy_conflict", status="failed",
            message="Active medication matches a recorded allergy", details=conflicts,
        )
    return IntegrityCheckResult(check_type="allergy_conflict", status="passed", message="No allergy conflicts")


def _check_duplicate_medications(record: MedicalRecord) -> IntegrityCheckResult:
    names = [m.name.lower() for m in record.active_medications()]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        return IntegrityCheckResult(
            check_type="medication_duplicate", status="warning",
            message="Medication prescribed more than once", details=duplicates,
        )
    return IntegrityCheckResult(check_type="medication_duplicate", status="passed", message="No duplicates")


def _check_diagnosis_codes(record: MedicalRecord) -> IntegrityCheckResult:
    unusual = [d.code for d in record.diagnoses if not _ICD10_PATTERN.match(d.code)]
    if unusual:
        return IntegrityCheckResult(
            check_type="diagnosis_consistency", status="warning",
            message="Diagnosis code format may not be valid ICD-10", details=unusual,
        )
    return IntegrityCheckResult(check_type="diagnosis_consistency", status="passed", message="Codes look valid")
