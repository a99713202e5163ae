"""Patient Registry Service.

Registration, update, lookup, logical deletion, search, duplicate detection
and merging of patients.

Security Impact:
    - High-confidence duplicates are refused at registration so a person never
      ends up with two clinical histories
    - Every mutation and every attributed read is written to the audit trail
    - Audit payloads describe what changed; the audit engine encrypts them

Architecture:
    - Pure domain service depending only on StoragePort and AuditTrailPort
    - Merge is delegated to the storage layer as one unit so no medical
      record, document or consent is left pointing at the removed duplicate
"""

import logging
import unicodedata
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from clinical_vault.domain.enums import DuplicateConfidence, MergeStrategy, PatientStatus
from clinical_vault.domain.errors import (
    ClinicalVaultError,
    DuplicatePatientError,
    PatientNotFoundError,
    ValidationError,
)
from clinical_vault.domain.identifiers import PatientId, UserId
from clinical_vault.domain.patient import Patient
from clinical_vault.domain.ports import AuditTrailPort, StoragePort
from clinical_vault.domain.status import StatusTransition
from clinical_vault.domain.utils import digits_only
from clinical_vault.domain.value_objects import (
    ContactInformation,
    EmergencyContact,
    InsuranceInformation,
    PersonalInformation,
)

logger = logging.getLogger(__name__)

DATA_TYPE = "patient_data"

# Word-level fuzzy matching used for medium-confidence duplicates
NAME_WORD_MAX_DISTANCE = 2
NAME_WORD_MATCH_RATIO = 0.7

_CONFIDENCE_RANK = {
    DuplicateConfidence.LOW: 0,
    DuplicateConfidence.MEDIUM: 1,
    DuplicateConfidence.HIGH: 2,
}


class PatientRegistration(BaseModel):
    """Everything needed to register a patient."""

    model_config = ConfigDict(frozen=True)

    personal_info: PersonalInformation
    contact_info: ContactInformation
    emergency_contact: Optional[EmergencyContact] = None
    insurance_info: Optional[InsuranceInformation] = None


class PatientUpdate(BaseModel):
    """Sections to replace on an existing patient.

    Only sections explicitly set are applied; explicitly passing ``None`` for
    ``emergency_contact`` or ``insurance_info`` clears it.
    """

    model_config = ConfigDict(frozen=True)

    personal_info: Optional[PersonalInformation] = None
    contact_info: Optional[ContactInformation] = None
    emergency_contact: Optional[EmergencyContact] = None
    insurance_info: Optional[InsuranceInformation] = None

    def changes(self) -> dict:
        changes = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name in ("personal_info", "contact_info"):
                continue
            changes[name] = value
        return changes


class PatientSearchCriteria(BaseModel):
    name: Optional[str] = None
    cpf: Optional[str] = None
    status: Optional[PatientStatus] = None
    date_of_birth: Optional[date] = None
    city: Optional[str] = None
    include_deleted: bool = False
    limit: int = Field(default=50, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class PatientSearchResult(BaseModel):
    patients: list[Patient]
    total: int
    limit: int
    offset: int

    @property
    def has_next(self) -> bool:
        return self.offset + len(self.patients) < self.total


class DuplicateDetectionResult(BaseModel):
    """Outcome of comparing candidate identity data with stored patients.

    Attributes:
        is_duplicate: True unless the confidence is ``low``
        confidence: Highest confidence found across all candidates
        potential_duplicates: Matching patients, strongest match first
        matching_fields: Union of the fields that matched
    """

    is_duplicate: bool
    confidence: DuplicateConfidence
    potential_duplicates: list[Patient] = Field(default_factory=list)
    matching_fields: list[str] = Field(default_factory=list)


class MergePlan(BaseModel):
    """Which side wins for each section of the unified patient."""

    model_config = ConfigDict(frozen=True)

    personal_info: MergeStrategy = MergeStrategy.PRIMARY
    contact_info: MergeStrategy = MergeStrategy.PRIMARY
    emergency_contact: MergeStrategy = MergeStrategy.PRIMARY
    insurance_info: MergeStrategy = MergeStrategy.PRIMARY


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def _normalize_name(name: str) -> list[str]:
    decomposed = unicodedata.normalize("NFKD", name.lower())
    letters = "".join(c for c in decomposed if c.isalpha() or c.isspace())
    return letters.split()


def names_are_similar(first: str, second: str) -> bool:
    """True when at least 70% of the shorter name's words have a close match."""
    words_a = _normalize_name(first)
    words_b = _normalize_name(second)
    if not words_a or not words_b:
        return False
    matching = sum(
        1 for word in words_a
        if any(word == other or levenshtein_distance(word, other) <= NAME_WORD_MAX_DISTANCE for other in words_b)
    )
    return matching >= min(len(words_a), len(words_b)) * NAME_WORD_MATCH_RATIO


def classify_match(candidate: PersonalInformation, existing: Patient) -> tuple[DuplicateConfidence, list[str]]:
    """Confidence and matching fields for one stored patient."""
    info = existing.personal_info
    fields: list[str] = []
    confidence = DuplicateConfidence.LOW

    if info.cpf == candidate.cpf:
        fields.append("cpf")
        confidence = DuplicateConfidence.HIGH

    same_dob = info.date_of_birth == candidate.date_of_birth
    if same_dob and str(info.full_name).lower() == str(candidate.full_name).lower():
        fields.extend(["full_name", "date_of_birth"])
        confidence = DuplicateConfidence.HIGH
    elif same_dob and names_are_similar(str(info.full_name), str(candidate.full_name)):
        fields.extend(["similar_name", "date_of_birth"])
        if confidence == DuplicateConfidence.LOW:
            confidence = DuplicateConfidence.MEDIUM

    return confidence, fields


class PatientRegistry:
    """Service owning patient identity.

    Example Usage:
        ```python
        registry = PatientRegistry(storage, audit_logger)
        patient = registry.register_patient(registration, actor=user_id)
        result = registry.detect_duplicates(patient.personal_info)
        ```
    """

    def __init__(self, storage: StoragePort, audit: Optional[AuditTrailPort] = None):
        self._storage = storage
        self._audit = audit

    def _log(self, actor, operation: str, patient_id, **kwargs) -> None:
        if self._audit is None:
            return
        self._audit.log_data_access(
            user_id=str(actor),
            operation=operation,
            data_type=DATA_TYPE,
            patient_id=str(patient_id) if patient_id is not None else None,
            **kwargs
        )

    def _require(self, patient_id: Union[PatientId, str]) -> Patient:
        try:
            pid = PatientId.coerce(patient_id)
        except ValueError as e:
            raise PatientNotFoundError(patient_id) from e
        patient = self._storage.get_patient(pid)
        if patient is None:
            raise PatientNotFoundError(pid)
        return patient

    # ------------------------------------------------------------------
    # registration and updates
    # ------------------------------------------------------------------

    def register_patient(self, registration: PatientRegistration, actor: Union[UserId, str]) -> Patient:
        """Register a new patient in status ``new``.

        Raises:
            DuplicatePatientError: If a high-confidence duplicate exists
        """
        actor = UserId.coerce(actor)
        detection = self.detect_duplicates(registration.personal_info)
        if detection.confidence == DuplicateConfidence.HIGH:
            logger.warning(
                f"Registration refused: {len(detection.potential_duplicates)} high-confidence duplicate(s)"
            )
            raise DuplicatePatientError(detection)

        patient = Patient(
            personal_info=registration.personal_info,
            contact_info=registration.contact_info,
            emergency_contact=registration.emergency_contact,
            insurance_info=registration.insurance_info,
            created_by=actor,
        )
        self._storage.save_patient(patient)
        try:
            self._storage.append_status_transition(StatusTransition(
                patient_id=patient.id,
                from_status=None,
                to_status=PatientStatus.NEW,
                reason="Patient registered",
                changed_by=actor,
                changed_at=patient.created_at,
            ))
        except ClinicalVaultError:
            self._storage.cascade_delete_patient(patient.id)
            raise

        self._log(actor, "create", patient.id, new_values={
            "status": patient.status.value,
            "sections": sorted(k for k in ("emergency_contact", "insurance_info") if getattr(patient, k)),
        })
        logger.info(f"Registered patient {patient.id}")
        return patient

    def update_patient(
        self,
        patient_id: Union[PatientId, str],
        update: PatientUpdate,
        actor: Union[UserId, str],
        expected_updated_at: Optional[datetime] = None
    ) -> Patient:
        """Replace the sections set on ``update``.

        Raises:
            PatientNotFoundError: If the patient does not exist
            DuplicatePatientError: If a changed CPF belongs to another patient
            ConcurrencyConflictError: If ``expected_updated_at`` is stale
        """
        actor = UserId.coerce(actor)
        patient = self._require(patient_id)
        changes = update.changes()
        if not changes:
            return patient

        new_personal = changes.get("personal_info")
        if new_personal is not None and new_personal.cpf != patient.personal_info.cpf:
            detection = self.detect_duplicates(new_personal, exclude_id=patient.id)
            if detection.confidence == DuplicateConfidence.HIGH:
                raise DuplicatePatientError(detection)

        updated = patient.evolve(**changes)
        self._storage.save_patient(updated, expected_updated_at=expected_updated_at or patient.updated_at)
        self._log(
            actor, "update", patient.id,
            old_values={name: _dump(getattr(patient, name)) for name in changes},
            new_values={name: _dump(value) for name, value in changes.items()},
        )
        return updated

    def get_patient(
        self,
        patient_id: Union[PatientId, str],
        actor: Optional[Union[UserId, str]] = None
    ) -> Optional[Patient]:
        """Fetch a patient; malformed or unknown ids return None."""
        try:
            pid = PatientId.coerce(patient_id)
        except ValueError:
            return None
        patient = self._storage.get_patient(pid)
        if patient is not None and actor is not None:
            self._log(actor, "read", pid)
        return patient

    def delete_patient(self, patient_id: Union[PatientId, str], actor: Union[UserId, str]) -> Patient:
        """Logically delete a patient (sets ``deleted_at``)."""
        patient = self._require(patient_id)
        deleted = patient.mark_deleted()
        self._storage.save_patient(deleted, expected_updated_at=patient.updated_at)
        self._log(actor, "delete", patient.id, new_values={"deleted_at": deleted.deleted_at.isoformat()})
        logger.info(f"Logically deleted patient {patient.id}")
        return deleted

    def search_patients(self, criteria: PatientSearchCriteria) -> PatientSearchResult:
        patients = self._storage.list_patients(status=criteria.status, include_deleted=criteria.include_deleted)
        name = criteria.name.strip().lower() if criteria.name else None
        cpf = digits_only(criteria.cpf) if criteria.cpf else None
        city = criteria.city.strip().lower() if criteria.city else None

        matches = [
            p for p in patients
            if (not name or name in str(p.personal_info.full_name).lower())
            and (not cpf or p.personal_info.cpf.root == cpf)
            and (criteria.date_of_birth is None or p.personal_info.date_of_birth == criteria.date_of_birth)
            and (not city or p.contact_info.address.city.lower() == city)
        ]
        matches.sort(key=lambda p: (str(p.personal_info.full_name).lower(), p.created_at))
        page = matches[criteria.offset:criteria.offset + criteria.limit]
        return PatientSearchResult(patients=page, total=len(matches), limit=criteria.limit, offset=criteria.offset)

    # ------------------------------------------------------------------
    # duplicates and merge
    # ------------------------------------------------------------------

    def detect_duplicates(
        self,
        personal_info: PersonalInformation,
        exclude_id: Optional[PatientId] = None
    ) -> DuplicateDetectionResult:
        candidates = self._storage.find_potential_duplicates(
            str(personal_info.full_name),
            personal_info.date_of_birth,
            personal_info.cpf.root,
        )
        scored = []
        fields: list[str] = []
        best = DuplicateConfidence.LOW
        for candidate in candidates:
            if exclude_id is not None and candidate.id == exclude_id:
                continue
            confidence, matched = classify_match(personal_info, candidate)
            if confidence == DuplicateConfidence.LOW:
                continue
            scored.append((confidence, candidate))
            fields.extend(f for f in matched if f not in fields)
            if _CONFIDENCE_RANK[confidence] > _CONFIDENCE_RANK[best]:
                best = confidence

        scored.sort(key=lambda item: _CONFIDENCE_RANK[item[0]], reverse=True)
        return DuplicateDetectionResult(
            is_duplicate=best != DuplicateConfidence.LOW,
            confidence=best,
            potential_duplicates=[patient for _, patient in scored],
            matching_fields=fields,
        )

    def merge_patients(
        self,
        primary_id: Union[PatientId, str],
        duplicate_id: Union[PatientId, str],
        plan: Optional[MergePlan] = None,
        actor: Optional[Union[UserId, str]] = None,
        expected_updated_at: Optional[datetime] = None
    ) -> Patient:
        """Fold ``duplicate_id`` into ``primary_id``.

        Sections are taken from the side named in ``plan``; the duplicate's
        dependents move to the primary and the duplicate is removed. The
        primary is saved only if it is unchanged since it was read here (or
        since ``expected_updated_at`` when given).

        Raises:
            PatientNotFoundError: If either patient does not exist
            ValidationError: If both ids are the same
            ConcurrencyConflictError: If the primary was updated concurrently
        """
        plan = plan or MergePlan()
        primary = self._require(primary_id)
        duplicate = self._require(duplicate_id)
        if primary.id == duplicate.id:
            raise ValidationError("Cannot merge a patient with itself", field="duplicate_id")

        sections = {}
        for name in ("personal_info", "contact_info", "emergency_contact", "insurance_info"):
            source = duplicate if getattr(plan, name) == MergeStrategy.DUPLICATE else primary
            sections[name] = getattr(source, name)
        merged = primary.evolve(**sections)

        counts = self._storage.merge_patients(
            merged, duplicate.id,
            expected_updated_at=expected_updated_at if expected_updated_at is not None else primary.updated_at,
        )
        if actor is not None:
            self._log(actor, "merge", primary.id, new_values={
                "duplicate_id": str(duplicate.id),
                "plan": plan.model_dump(mode="json"),
                "moved": counts,
            })
        logger.info(f"Merged patient {duplicate.id} into {primary.id}: {counts}")
        return merged


def _dump(value):
    return value.model_dump(mode="json") if isinstance(value, BaseModel) else value
