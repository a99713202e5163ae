"""Status Transition Tracker.

Validates patient status changes against the adjacency table in
``clinical_vault.domain.status`` and keeps the append-only status ledger.

Security Impact:
    - A status change and its ledger row are persisted as one unit, so the
      ledger always explains the current status
    - Rejected transitions leave no trace in the ledger; they are recorded in
      the audit trail as denied operations

Architecture:
    - Pure domain service depending only on StoragePort and AuditTrailPort
    - Read views (history, time in status, patterns, statistics) are computed
      from ledger rows in memory
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel

from clinical_vault.domain.enums import AccessResult, PatientStatus
from clinical_vault.domain.errors import InvalidStatusTransitionError, PatientNotFoundError
from clinical_vault.domain.identifiers import PatientId, UserId
from clinical_vault.domain.patient import Patient
from clinical_vault.domain.ports import AuditTrailPort, StoragePort
from clinical_vault.domain.status import StatusTransition, allowed_transitions
from clinical_vault.domain.utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

DATA_TYPE = "patient_status"
RECENT_TRANSITIONS_LIMIT = 10
SECONDS_PER_DAY = 86400


class TransitionPattern(BaseModel):
    from_status: Optional[PatientStatus]
    to_status: PatientStatus
    count: int


class StatusStatistics(BaseModel):
    """Snapshot of the patient population by status.

    Attributes:
        total_patients: Non-deleted patients
        status_counts: Patients per current status (every status present)
        recent_transitions: Latest ledger rows, newest first
        average_time_in_status: Mean days a patient spends in each status
    """
    total_patients: int
    status_counts: dict[str, int]
    recent_transitions: list[StatusTransition]
    average_time_in_status: dict[str, float]


def durations_by_status(
    transitions: list[StatusTransition],
    now: Optional[datetime] = None
) -> dict[str, float]:
    """Seconds spent in each status given one patient's chronological ledger.

    The last status stays open until ``now``.
    """
    now = ensure_utc(now) if now else utc_now()
    totals: dict[str, float] = {}
    for current, following in zip(transitions, transitions[1:] + [None]):
        end = following.changed_at if following is not None else now
        seconds = max((end - current.changed_at).total_seconds(), 0.0)
        key = current.to_status.value
        totals[key] = totals.get(key, 0.0) + seconds
    return totals


class StatusTracker:
    """Service for patient status transitions and their ledger.

    Example Usage:
        ```python
        tracker = StatusTracker(storage, audit_logger)
        patient = tracker.change_status(patient_id, PatientStatus.ACTIVE, "First session", actor)
        history = tracker.get_status_history(patient_id)
        ```
    """

    def __init__(self, storage: StoragePort, audit: Optional[AuditTrailPort] = None):
        self._storage = storage
        self._audit = audit

    def _require(self, patient_id: Union[PatientId, str]) -> Patient:
        try:
            pid = PatientId.coerce(patient_id)
        except ValueError as e:
            raise PatientNotFoundError(patient_id) from e
        patient = self._storage.get_patient(pid)
        if patient is None:
            raise PatientNotFoundError(pid)
        return patient

    def change_status(
        self,
        patient_id: Union[PatientId, str],
        new_status: Union[PatientStatus, str],
        reason: Optional[str],
        actor: Union[UserId, str],
        expected_updated_at: Optional[datetime] = None
    ) -> Patient:
        """Move a patient to ``new_status`` and append one ledger row.

        Raises:
            PatientNotFoundError: If the patient does not exist
            InvalidStatusTransitionError: If the adjacency table forbids the
                change (no state or ledger change happens)
            ConcurrencyConflictError: If ``expected_updated_at`` is stale
        """
        actor = UserId.coerce(actor)
        new_status = PatientStatus(new_status)
        patient = self._require(patient_id)

        try:
            updated = patient.change_status(new_status)
        except InvalidStatusTransitionError:
            logger.warning(
                f"Rejected status change for patient {patient.id}: "
                f"{patient.status.value} -> {new_status.value}"
            )
            if self._audit is not None:
                self._audit.log_data_access(
                    user_id=str(actor),
                    operation="status_change",
                    data_type=DATA_TYPE,
                    patient_id=str(patient.id),
                    access_result=AccessResult.DENIED,
                    justification=f"Invalid transition {patient.status.value} -> {new_status.value}",
                )
            raise

        transition = StatusTransition(
            patient_id=patient.id,
            from_status=patient.status,
            to_status=new_status,
            reason=reason or "",
            changed_by=actor,
            changed_at=updated.updated_at,
        )
        self._storage.apply_status_change(
            updated,
            transition,
            expected_updated_at=expected_updated_at or patient.updated_at,
        )
        if self._audit is not None:
            self._audit.log_data_access(
                user_id=str(actor),
                operation="status_change",
                data_type=DATA_TYPE,
                patient_id=str(patient.id),
                old_values={"status": patient.status.value},
                new_values={"status": new_status.value, "reason": transition.reason},
            )
        logger.info(f"Patient {patient.id} status {patient.status.value} -> {new_status.value}")
        return updated

    def get_status_history(
        self,
        patient_id: Union[PatientId, str],
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> list[StatusTransition]:
        """Ledger rows for one patient, oldest first."""
        pid = self._require(patient_id).id
        return self._storage.list_status_transitions(pid, start_date=start_date, end_date=end_date)

    def get_allowed_transitions(self, patient_id: Union[PatientId, str]) -> list[PatientStatus]:
        current = self._require(patient_id).status
        return sorted(allowed_transitions(current), key=lambda s: list(PatientStatus).index(s))

    def get_patients_by_status(self, status: Union[PatientStatus, str]) -> list[Patient]:
        patients = self._storage.list_patients(status=PatientStatus(status))
        return sorted(patients, key=lambda p: p.updated_at, reverse=True)

    def get_time_in_status(
        self,
        patient_id: Union[PatientId, str],
        now: Optional[datetime] = None
    ) -> dict[str, float]:
        """Seconds the patient has spent in each status so far."""
        pid = self._require(patient_id).id
        return durations_by_status(self._storage.list_status_transitions(pid), now)

    def get_transition_patterns(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> list[TransitionPattern]:
        """How often each from->to pair occurred, most frequent first."""
        rows = self._storage.list_status_transitions(start_date=start_date, end_date=end_date)
        counts = Counter((row.from_status, row.to_status) for row in rows)
        # Counter.most_common keeps first-seen order for ties
        return [
            TransitionPattern(from_status=from_status, to_status=to_status, count=count)
            for (from_status, to_status), count in counts.most_common()
        ]

    def get_status_statistics(self, now: Optional[datetime] = None) -> StatusStatistics:
        patients = self._storage.list_patients()
        counts = {status.value: 0 for status in PatientStatus}
        for patient in patients:
            counts[patient.status.value] += 1

        rows = self._storage.list_status_transitions()
        by_patient: dict[str, list[StatusTransition]] = {}
        for row in rows:
            by_patient.setdefault(str(row.patient_id), []).append(row)

        totals: dict[str, list[float]] = {}
        for ledger in by_patient.values():
            for status, seconds in durations_by_status(ledger, now).items():
                totals.setdefault(status, []).append(seconds)
        averages = {
            status: round(sum(values) / len(values) / SECONDS_PER_DAY, 4)
            for status, values in totals.items()
        }

        return StatusStatistics(
            total_patients=len(patients),
            status_counts=counts,
            recent_transitions=list(reversed(rows[-RECENT_TRANSITIONS_LIMIT:])),
            average_time_in_status=averages,
        )
