"""In-Memory Storage Adapter.

Implements the StoragePort contract with plain dictionaries guarded by one
re-entrant lock. Every existence check and the write it protects run inside
the same critical section, so a dependent can never be created for a patient
that is concurrently being deleted.

Security Impact:
    - Referential integrity enforced on every dependent write
    - Audit entries are append-only; only retention purge removes them
    - Data lives in process memory only (tests, development, embedding)

Architecture:
    - Implements StoragePort (Hexagonal Architecture)
    - Stores the immutable domain snapshots themselves, so round trips are
      lossless by construction
"""

import logging
from datetime import datetime
from threading import RLock
from typing import Optional

from clinical_vault.domain.audit_models import AuditLogEntry, AuditLogFilter
from clinical_vault.domain.compliance_models import ConsentRecord
from clinical_vault.domain.document import Document, EncryptionMetadata
from clinical_vault.domain.enums import PatientStatus
from clinical_vault.domain.identifiers import DocumentId, MedicalRecordId, PatientId
from clinical_vault.domain.medical_record import MedicalRecord
from clinical_vault.domain.patient import Patient
from clinical_vault.domain.ports import (
    ConcurrencyConflictError,
    PatientNotFoundError,
    ReferentialIntegrityError,
    Result,
    StorageError,
    StoragePort,
)
from clinical_vault.domain.status import StatusTransition
from clinical_vault.domain.utils import digits_only, ensure_utc

logger = logging.getLogger(__name__)

AUDIT_SORT_FIELDS = {"timestamp", "operation", "user_id", "patient_id", "data_type", "access_result"}


def sort_audit_entries(entries: list[AuditLogEntry], sort_by: str, sort_order: str) -> list[AuditLogEntry]:
    """Stable sort on an allow-listed field; unknown fields fall back to timestamp."""
    field_name = sort_by if sort_by in AUDIT_SORT_FIELDS else "timestamp"
    descending = (sort_order or "DESC").upper() != "ASC"

    def key(entry: AuditLogEntry):
        value = getattr(entry, field_name)
        value = getattr(value, "value", value)
        return (value is None, value if value is not None else "")

    return sorted(entries, key=key, reverse=descending)


class InMemoryStorageAdapter(StoragePort):
    """Thread-safe in-memory implementation of StoragePort.

    Example Usage:
        ```python
        storage = InMemoryStorageAdapter()
        storage.initialize_schema()
        storage.save_patient(patient)
        storage.save_medical_record(MedicalRecord(patient_id=patient.id))
        ```
    """

    def __init__(self):
        self._lock = RLock()
        self._patients: dict[str, Patient] = {}
        self._medical_records: dict[str, MedicalRecord] = {}
        self._documents: dict[str, Document] = {}
        self._encryption_metadata: dict[tuple[str, str], EncryptionMetadata] = {}
        self._status_history: list[StatusTransition] = []
        self._consents: dict[str, ConsentRecord] = {}
        self._audit_log: list[AuditLogEntry] = []
        self._audit_ids: set[str] = set()
        self._initialized = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def initialize_schema(self) -> Result[None]:
        self._initialized = True
        return Result.success_result(None)

    def close(self) -> None:
        logger.debug("Closed in-memory storage")

    def count_entities(self) -> dict[str, int]:
        with self._lock:
            return {
                "patients": len(self._patients),
                "medical_records": len(self._medical_records),
                "patient_documents": len(self._documents),
                "document_encryption_metadata": len(self._encryption_metadata),
                "patient_status_history": len(self._status_history),
                "patient_consents": len(self._consents),
                "audit_log": len(self._audit_log),
            }

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _require_patient(self, patient_id: PatientId, entity_type: str, operation: str) -> None:
        if not self.patient_exists(patient_id):
            raise ReferentialIntegrityError(entity_type, str(patient_id), operation)

    # ------------------------------------------------------------------
    # patients
    # ------------------------------------------------------------------

    def save_patient(self, patient: Patient, expected_updated_at: Optional[datetime] = None) -> Patient:
        with self._lock:
            current = self._patients.get(str(patient.id))
            if expected_updated_at is not None:
                actual = current.updated_at if current else None
                if actual != ensure_utc(expected_updated_at):
                    raise ConcurrencyConflictError("patient", str(patient.id), expected_updated_at, actual)
            self._patients[str(patient.id)] = patient
            return patient

    def get_patient(self, patient_id: PatientId, include_deleted: bool = False) -> Optional[Patient]:
        with self._lock:
            patient = self._patients.get(str(patient_id))
        if patient is None or (patient.is_deleted and not include_deleted):
            return None
        return patient

    def patient_exists(self, patient_id: PatientId) -> bool:
        with self._lock:
            patient = self._patients.get(str(patient_id))
            return patient is not None and not patient.is_deleted

    def list_patients(
        self,
        status: Optional[PatientStatus] = None,
        include_deleted: bool = False
    ) -> list[Patient]:
        with self._lock:
            patients = list(self._patients.values())
        return [
            p for p in patients
            if (include_deleted or not p.is_deleted) and (status is None or p.status == status)
        ]

    def find_potential_duplicates(self, full_name: str, date_of_birth, cpf: Optional[str] = None) -> list[Patient]:
        cpf_digits = digits_only(cpf) if cpf else None
        name = (full_name or "").strip().lower()
        matches = []
        for patient in self.list_patients():
            info = patient.personal_info
            if ((cpf_digits and info.cpf.root == cpf_digits)
                    or info.date_of_birth == date_of_birth
                    or info.full_name.root.lower() == name):
                matches.append(patient)
        return matches

    def cascade_delete_patient(self, patient_id: PatientId) -> dict[str, int]:
        pid = str(patient_id)
        with self._lock:
            if pid not in self._patients:
                raise PatientNotFoundError(pid)
            counts = self._delete_dependents(pid)
            del self._patients[pid]
            counts["patients"] = 1
        logger.info(f"Cascade-deleted patient {pid}: {counts}")
        return counts

    def _delete_dependents(self, pid: str) -> dict[str, int]:
        records = [k for k, r in self._medical_records.items() if str(r.patient_id) == pid]
        documents = [k for k, d in self._documents.items() if str(d.patient_id) == pid]
        consents = [k for k, c in self._consents.items() if str(c.patient_id) == pid]
        metadata = [k for k in self._encryption_metadata if k[0] in documents]
        for key in records:
            del self._medical_records[key]
        for key in metadata:
            del self._encryption_metadata[key]
        for key in documents:
            del self._documents[key]
        for key in consents:
            del self._consents[key]
        before = len(self._status_history)
        self._status_history = [t for t in self._status_history if str(t.patient_id) != pid]
        return {
            "medical_records": len(records),
            "patient_documents": len(documents),
            "document_encryption_metadata": len(metadata),
            "patient_consents": len(consents),
            "patient_status_history": before - len(self._status_history),
        }

    def merge_patients(
        self,
        merged_primary: Patient,
        duplicate_id: PatientId,
        expected_updated_at: Optional[datetime] = None
    ) -> dict[str, int]:
        primary_id = str(merged_primary.id)
        dup = str(duplicate_id)
        with self._lock:
            current = self._patients.get(primary_id)
            if current is None:
                raise PatientNotFoundError(primary_id)
            if dup not in self._patients:
                raise PatientNotFoundError(dup)
            if expected_updated_at is not None and current.updated_at != ensure_utc(expected_updated_at):
                raise ConcurrencyConflictError("patient", primary_id, expected_updated_at, current.updated_at)

            counts = {"medical_records": 0, "patient_documents": 0, "patient_consents": 0}
            for key, record in list(self._medical_records.items()):
                if str(record.patient_id) == dup:
                    self._medical_records[key] = record.reassign(merged_primary.id)
                    counts["medical_records"] += 1
            for key, document in list(self._documents.items()):
                if str(document.patient_id) == dup:
                    self._documents[key] = document.reassign(merged_primary.id)
                    counts["patient_documents"] += 1
            for key, consent in list(self._consents.items()):
                if str(consent.patient_id) == dup:
                    self._consents[key] = consent.reassign(merged_primary.id)
                    counts["patient_consents"] += 1

            before = len(self._status_history)
            self._status_history = [t for t in self._status_history if str(t.patient_id) != dup]
            counts["patient_status_history_removed"] = before - len(self._status_history)

            self._patients[primary_id] = merged_primary
            del self._patients[dup]
        return counts

    # ------------------------------------------------------------------
    # medical records
    # ------------------------------------------------------------------

    def save_medical_record(
        self,
        record: MedicalRecord,
        expected_updated_at: Optional[datetime] = None
    ) -> MedicalRecord:
        with self._lock:
            self._require_patient(record.patient_id, "medical record", "save")
            current = self._medical_records.get(str(record.id))
            if expected_updated_at is not None:
                actual = current.updated_at if current else None
                if actual != ensure_utc(expected_updated_at):
                    raise ConcurrencyConflictError("medical_record", str(record.id), expected_updated_at, actual)
            self._medical_records[str(record.id)] = record
            return record

    def get_medical_record(self, record_id: MedicalRecordId) -> Optional[MedicalRecord]:
        with self._lock:
            return self._medical_records.get(str(record_id))

    def list_medical_records(self, patient_id: PatientId) -> list[MedicalRecord]:
        with self._lock:
            records = [r for r in self._medical_records.values() if str(r.patient_id) == str(patient_id)]
        return sorted(records, key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------

    def save_document(self, document: Document, expected_version: Optional[int] = None) -> Document:
        with self._lock:
            self._require_patient(document.patient_id, "document", "save")
            current = self._documents.get(str(document.id))
            if expected_version is not None:
                actual = current.metadata.version if current else None
                if actual != expected_version:
                    raise ConcurrencyConflictError("document", str(document.id), expected_version, actual)
            self._documents[str(document.id)] = document
            return document

    def get_document(self, document_id: DocumentId) -> Optional[Document]:
        with self._lock:
            return self._documents.get(str(document_id))

    def list_documents(self, patient_id: Optional[PatientId] = None) -> list[Document]:
        with self._lock:
            documents = list(self._documents.values())
        if patient_id is not None:
            documents = [d for d in documents if str(d.patient_id) == str(patient_id)]
        return sorted(documents, key=lambda d: d.uploaded_at)

    def delete_document(self, document_id: DocumentId) -> bool:
        did = str(document_id)
        with self._lock:
            if did not in self._documents:
                return False
            self.delete_encryption_metadata(document_id)
            del self._documents[did]
            return True

    def save_encryption_metadata(self, metadata: EncryptionMetadata) -> None:
        with self._lock:
            self._encryption_metadata[(str(metadata.document_id), metadata.file_path)] = metadata

    def get_encryption_metadata(self, document_id: DocumentId, file_path: str) -> Optional[EncryptionMetadata]:
        with self._lock:
            return self._encryption_metadata.get((str(document_id), file_path))

    def list_encryption_metadata(self, document_id: DocumentId) -> list[EncryptionMetadata]:
        with self._lock:
            return [m for (did, _), m in self._encryption_metadata.items() if did == str(document_id)]

    def delete_encryption_metadata(self, document_id: DocumentId, file_path: Optional[str] = None) -> int:
        did = str(document_id)
        with self._lock:
            keys = [
                k for k in self._encryption_metadata
                if k[0] == did and (file_path is None or k[1] == file_path)
            ]
            for key in keys:
                del self._encryption_metadata[key]
            return len(keys)

    # ------------------------------------------------------------------
    # status ledger
    # ------------------------------------------------------------------

    def append_status_transition(self, transition: StatusTransition) -> StatusTransition:
        with self._lock:
            self._require_patient(transition.patient_id, "status transition", "append")
            self._status_history.append(transition)
            return transition

    def apply_status_change(
        self,
        patient: Patient,
        transition: StatusTransition,
        expected_updated_at: Optional[datetime] = None
    ) -> Patient:
        with self._lock:
            self._require_patient(patient.id, "status transition", "append")
            self.save_patient(patient, expected_updated_at=expected_updated_at)
            self._status_history.append(transition)
            return patient

    def list_status_transitions(
        self,
        patient_id: Optional[PatientId] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> list[StatusTransition]:
        with self._lock:
            rows = list(self._status_history)
        if patient_id is not None:
            rows = [t for t in rows if str(t.patient_id) == str(patient_id)]
        if start_date is not None:
            rows = [t for t in rows if t.changed_at >= ensure_utc(start_date)]
        if end_date is not None:
            rows = [t for t in rows if t.changed_at <= ensure_utc(end_date)]
        return sorted(rows, key=lambda t: t.changed_at)

    # ------------------------------------------------------------------
    # consents
    # ------------------------------------------------------------------

    def save_consent(self, consent: ConsentRecord) -> ConsentRecord:
        with self._lock:
            self._require_patient(consent.patient_id, "consent", "save")
            self._consents[consent.id] = consent
            return consent

    def list_consents(self, patient_id: PatientId) -> list[ConsentRecord]:
        with self._lock:
            consents = [c for c in self._consents.values() if str(c.patient_id) == str(patient_id)]
        return sorted(consents, key=lambda c: c.granted_at)

    # ------------------------------------------------------------------
    # audit log
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditLogEntry) -> Result[str]:
        try:
            with self._lock:
                if entry.id in self._audit_ids:
                    raise StorageError(f"Audit entry {entry.id} already written", operation="append_audit_entry")
                self._audit_log.append(entry)
                self._audit_ids.add(entry.id)
            return Result.success_result(entry.id)
        except Exception as e:
            error_msg = f"Failed to append audit entry: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(
                StorageError(error_msg, operation="append_audit_entry"),
                error_type="StorageError"
            )

    def query_audit_entries(self, audit_filter: AuditLogFilter) -> tuple[list[AuditLogEntry], int]:
        with self._lock:
            entries = [e for e in self._audit_log if audit_filter.matches(e)]
        entries = sort_audit_entries(entries, audit_filter.sort_by, audit_filter.sort_order)
        total = len(entries)
        start = audit_filter.offset
        end = start + audit_filter.limit if audit_filter.limit is not None else None
        return entries[start:end], total

    def delete_audit_entries_before(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        with self._lock:
            before = len(self._audit_log)
            self._audit_log = [e for e in self._audit_log if e.timestamp >= cutoff]
            self._audit_ids = {e.id for e in self._audit_log}
            return before - len(self._audit_log)

    # ------------------------------------------------------------------
    # consistency
    # ------------------------------------------------------------------

    def find_orphans(self) -> dict[str, list[str]]:
        with self._lock:
            known = set(self._patients)
            return {
                "medical_records": [k for k, r in self._medical_records.items() if str(r.patient_id) not in known],
                "patient_documents": [k for k, d in self._documents.items() if str(d.patient_id) not in known],
                "patient_status_history": [t.id for t in self._status_history if str(t.patient_id) not in known],
                "patient_consents": [k for k, c in self._consents.items() if str(c.patient_id) not in known],
            }
