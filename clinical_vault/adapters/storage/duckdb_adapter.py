"""DuckDB Storage Adapter.

This adapter implements the StoragePort contract on DuckDB, an in-process
database that keeps the whole clinical vault in a single file (or in memory).

Each table stores the entity's full JSON snapshot in ``payload`` next to the
few columns the adapter filters, joins or orders on. Snapshots are rebuilt
with the rehydration context, so stored entities come back field-for-field
equal to what was saved even after time-dependent rules (insurance expiry,
maximum age) would reject them as new input.

Security Impact:
    - Referential integrity is checked inside the same transaction as every
      dependent write
    - Audit entries are append-only; only retention purge removes them
    - Connection details are managed via configuration and never logged

Architecture:
    - Implements StoragePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - One connection serialized by a re-entrant lock; every mutation runs in
      an explicit transaction and is rolled back on failure
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Iterator, Optional

import duckdb

from clinical_vault.domain.audit_models import AuditLogEntry, AuditLogFilter
from clinical_vault.domain.compliance_models import ConsentRecord
from clinical_vault.domain.document import Document, EncryptionMetadata
from clinical_vault.domain.enums import PatientStatus
from clinical_vault.domain.errors import ClinicalVaultError
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
from clinical_vault.domain.utils import digits_only, ensure_utc, to_naive_utc
from clinical_vault.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

REHYDRATE = {"rehydrate": True}

# Audit sort fields mapped to their columns
AUDIT_SORT_COLUMNS = {
    "timestamp": "event_timestamp",
    "operation": "operation",
    "user_id": "user_id",
    "patient_id": "patient_id",
    "data_type": "data_type",
    "access_result": "access_result",
}

SCHEMA_STATEMENTS = [
    "CREATE SEQUENCE IF NOT EXISTS status_seq START 1",
    "CREATE SEQUENCE IF NOT EXISTS audit_log_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS patients (
        patient_id VARCHAR PRIMARY KEY,
        status VARCHAR NOT NULL,
        cpf VARCHAR,
        full_name_lower VARCHAR,
        date_of_birth DATE,
        created_at TIMESTAMP NOT NULL,
        deleted_at TIMESTAMP,
        payload VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS medical_records (
        record_id VARCHAR PRIMARY KEY,
        patient_id VARCHAR NOT NULL,
        payload VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS patient_documents (
        document_id VARCHAR PRIMARY KEY,
        patient_id VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        version INTEGER NOT NULL,
        payload VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document_encryption_metadata (
        document_id VARCHAR NOT NULL,
        file_path VARCHAR NOT NULL,
        payload VARCHAR NOT NULL,
        PRIMARY KEY (document_id, file_path)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS patient_status_history (
        transition_id VARCHAR PRIMARY KEY,
        patient_id VARCHAR NOT NULL,
        changed_at TIMESTAMP NOT NULL,
        seq BIGINT NOT NULL,
        payload VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS patient_consents (
        consent_id VARCHAR PRIMARY KEY,
        patient_id VARCHAR NOT NULL,
        payload VARCHAR NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        log_id VARCHAR PRIMARY KEY,
        seq BIGINT NOT NULL,
        event_timestamp TIMESTAMP NOT NULL,
        user_id VARCHAR NOT NULL,
        patient_id VARCHAR,
        operation VARCHAR NOT NULL,
        data_type VARCHAR NOT NULL,
        access_result VARCHAR NOT NULL,
        payload VARCHAR NOT NULL
    )
    """,
]

TABLES = [
    "patients",
    "medical_records",
    "patient_documents",
    "document_encryption_metadata",
    "patient_status_history",
    "patient_consents",
    "audit_log",
]


class DuckDBAdapter(StoragePort):
    """DuckDB implementation of StoragePort.

    Parameters:
        db_config: DatabaseConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)

    Example Usage:
        ```python
        # Using configuration manager (recommended)
        from clinical_vault.infrastructure.config_manager import get_database_config

        adapter = DuckDBAdapter(db_config=get_database_config())

        # Or using db_path directly
        adapter = DuckDBAdapter(db_path="data/clinical_vault.duckdb")

        result = adapter.initialize_schema()
        if result.is_success():
            adapter.save_patient(patient)
        ```
    """

    def __init__(
        self,
        db_config: Optional[DatabaseConfig] = None,
        db_path: Optional[str] = None
    ):
        """Initialize DuckDB adapter.

        Security Impact:
            - Database directory is validated before any connection is made
            - Connection is established lazily (on first operation)

        Note:
            If both db_config and db_path are provided, db_config takes precedence.
            If neither is provided, defaults to in-memory database.
        """
        if db_config:
            if db_config.db_type != "duckdb":
                raise StorageError(
                    f"DatabaseConfig type '{db_config.db_type}' does not match DuckDB adapter",
                    operation="__init__"
                )
            self.db_path = db_config.db_path or ":memory:"
        elif db_path:
            self.db_path = db_path
        else:
            self.db_path = ":memory:"

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False
        self._lock = RLock()

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    # ------------------------------------------------------------------
    # connection and transactions
    # ------------------------------------------------------------------

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except Exception as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                )
        return self._connection

    def _ready_connection(self) -> duckdb.DuckDBPyConnection:
        if not self._initialized:
            init_result = self.initialize_schema()
            if not init_result.is_success():
                raise StorageError(init_result.error, operation="initialize_schema")
        return self._get_connection()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run the block in one transaction; roll back on any failure.

        Domain errors propagate unchanged, anything else is wrapped in
        ``StorageError("Failed to <operation>: <cause>")``.
        """
        with self._lock:
            conn = self._ready_connection()
            conn.begin()
            try:
                yield conn
                conn.commit()
            except ClinicalVaultError:
                self._rollback(conn, operation)
                raise
            except Exception as e:
                self._rollback(conn, operation)
                error_msg = f"Failed to {operation}: {str(e)}"
                logger.error(error_msg)
                raise StorageError(error_msg, operation=operation) from e

    @contextmanager
    def _reading(self, operation: str) -> Iterator[duckdb.DuckDBPyConnection]:
        with self._lock:
            conn = self._ready_connection()
            try:
                yield conn
            except ClinicalVaultError:
                raise
            except Exception as e:
                error_msg = f"Failed to {operation}: {str(e)}"
                logger.error(error_msg)
                raise StorageError(error_msg, operation=operation) from e

    @staticmethod
    def _rollback(conn: duckdb.DuckDBPyConnection, operation: str) -> None:
        try:
            conn.rollback()
        except Exception as e:
            logger.warning(f"Rollback after failed {operation} raised {type(e).__name__}: {e}")

    @staticmethod
    def _scalar(conn: duckdb.DuckDBPyConnection, query: str, params: list) -> int:
        row = conn.execute(query, params).fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def initialize_schema(self) -> Result[None]:
        """Create sequences and tables if they do not exist.

        Returns:
            Result[None]: Success or failure result
        """
        with self._lock:
            try:
                conn = self._get_connection()
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
                self._initialized = True
                logger.info("Database schema initialized successfully")
                return Result.success_result(None)
            except Exception as e:
                error_msg = f"Failed to initialize schema: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return Result.failure_result(
                    StorageError(error_msg, operation="initialize_schema"),
                    error_type="StorageError"
                )

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                self._initialized = False
                logger.info("DuckDB connection closed")

    def count_entities(self) -> dict[str, int]:
        with self._reading("count_entities") as conn:
            return {table: self._scalar(conn, f"SELECT COUNT(*) FROM {table}", []) for table in TABLES}

    # ------------------------------------------------------------------
    # patients
    # ------------------------------------------------------------------

    @staticmethod
    def _load_patient(payload: str) -> Patient:
        return Patient.model_validate_json(payload, context=REHYDRATE)

    def _fetch_patient(self, conn, pid: str) -> Optional[Patient]:
        row = conn.execute("SELECT payload FROM patients WHERE patient_id = ?", [pid]).fetchone()
        return self._load_patient(row[0]) if row else None

    def _require_patient(self, conn, patient_id, entity_type: str, operation: str) -> None:
        row = conn.execute(
            "SELECT 1 FROM patients WHERE patient_id = ? AND deleted_at IS NULL", [str(patient_id)]
        ).fetchone()
        if row is None:
            raise ReferentialIntegrityError(entity_type, str(patient_id), operation)

    def _write_patient(self, conn, patient: Patient, expected_updated_at: Optional[datetime] = None) -> None:
        pid = str(patient.id)
        current = self._fetch_patient(conn, pid)
        if expected_updated_at is not None:
            actual = current.updated_at if current else None
            if actual != ensure_utc(expected_updated_at):
                raise ConcurrencyConflictError("patient", pid, expected_updated_at, actual)

        info = patient.personal_info
        values = [
            patient.status.value,
            info.cpf.root,
            info.full_name.root.lower(),
            info.date_of_birth,
            to_naive_utc(patient.created_at),
            to_naive_utc(patient.deleted_at),
            patient.model_dump_json(),
        ]
        if current is None:
            conn.execute("""
                INSERT INTO patients (
                    status, cpf, full_name_lower, date_of_birth, created_at, deleted_at, payload, patient_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, values + [pid])
        else:
            conn.execute("""
                UPDATE patients SET
                    status = ?, cpf = ?, full_name_lower = ?, date_of_birth = ?,
                    created_at = ?, deleted_at = ?, payload = ?
                WHERE patient_id = ?
            """, values + [pid])

    def save_patient(self, patient: Patient, expected_updated_at: Optional[datetime] = None) -> Patient:
        with self._transaction("save_patient") as conn:
            self._write_patient(conn, patient, expected_updated_at)
        return patient

    def get_patient(self, patient_id: PatientId, include_deleted: bool = False) -> Optional[Patient]:
        with self._reading("get_patient") as conn:
            patient = self._fetch_patient(conn, str(patient_id))
        if patient is None or (patient.is_deleted and not include_deleted):
            return None
        return patient

    def patient_exists(self, patient_id: PatientId) -> bool:
        with self._reading("patient_exists") as conn:
            row = conn.execute(
                "SELECT 1 FROM patients WHERE patient_id = ? AND deleted_at IS NULL", [str(patient_id)]
            ).fetchone()
        return row is not None

    def list_patients(
        self,
        status: Optional[PatientStatus] = None,
        include_deleted: bool = False
    ) -> list[Patient]:
        query = "SELECT payload FROM patients WHERE 1=1"
        params: list = []
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        if status is not None:
            query += " AND status = ?"
            params.append(PatientStatus(status).value)
        query += " ORDER BY created_at, patient_id"

        with self._reading("list_patients") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._load_patient(row[0]) for row in rows]

    def find_potential_duplicates(self, full_name: str, date_of_birth, cpf: Optional[str] = None) -> list[Patient]:
        conditions = ["date_of_birth = ?", "full_name_lower = ?"]
        params: list = [date_of_birth, (full_name or "").strip().lower()]
        cpf_digits = digits_only(cpf) if cpf else None
        if cpf_digits:
            conditions.append("cpf = ?")
            params.append(cpf_digits)

        query = (
            "SELECT payload FROM patients WHERE deleted_at IS NULL AND ("
            + " OR ".join(conditions)
            + ") ORDER BY created_at, patient_id"
        )
        with self._reading("find_potential_duplicates") as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._load_patient(row[0]) for row in rows]

    def _delete_dependents(self, conn, pid: str) -> dict[str, int]:
        document_ids = "SELECT document_id FROM patient_documents WHERE patient_id = ?"
        counts = {
            "medical_records": self._scalar(
                conn, "SELECT COUNT(*) FROM medical_records WHERE patient_id = ?", [pid]),
            "patient_documents": self._scalar(
                conn, "SELECT COUNT(*) FROM patient_documents WHERE patient_id = ?", [pid]),
            "document_encryption_metadata": self._scalar(
                conn,
                f"SELECT COUNT(*) FROM document_encryption_metadata WHERE document_id IN ({document_ids})",
                [pid]),
            "patient_consents": self._scalar(
                conn, "SELECT COUNT(*) FROM patient_consents WHERE patient_id = ?", [pid]),
            "patient_status_history": self._scalar(
                conn, "SELECT COUNT(*) FROM patient_status_history WHERE patient_id = ?", [pid]),
        }
        conn.execute(f"DELETE FROM document_encryption_metadata WHERE document_id IN ({document_ids})", [pid])
        conn.execute("DELETE FROM medical_records WHERE patient_id = ?", [pid])
        conn.execute("DELETE FROM patient_documents WHERE patient_id = ?", [pid])
        conn.execute("DELETE FROM patient_consents WHERE patient_id = ?", [pid])
        conn.execute("DELETE FROM patient_status_history WHERE patient_id = ?", [pid])
        return counts

    def cascade_delete_patient(self, patient_id: PatientId) -> dict[str, int]:
        pid = str(patient_id)
        with self._transaction("cascade_delete_patient") as conn:
            if self._fetch_patient(conn, pid) is None:
                raise PatientNotFoundError(pid)
            counts = self._delete_dependents(conn, pid)
            conn.execute("DELETE FROM patients WHERE patient_id = ?", [pid])
            counts["patients"] = 1
        logger.info(f"Cascade-deleted patient {pid}: {counts}")
        return counts

    def merge_patients(
        self,
        merged_primary: Patient,
        duplicate_id: PatientId,
        expected_updated_at: Optional[datetime] = None
    ) -> dict[str, int]:
        primary_id = str(merged_primary.id)
        dup = str(duplicate_id)
        with self._transaction("merge_patients") as conn:
            current = self._fetch_patient(conn, primary_id)
            if current is None:
                raise PatientNotFoundError(primary_id)
            if self._fetch_patient(conn, dup) is None:
                raise PatientNotFoundError(dup)
            if expected_updated_at is not None and current.updated_at != ensure_utc(expected_updated_at):
                raise ConcurrencyConflictError("patient", primary_id, expected_updated_at, current.updated_at)

            counts = {"medical_records": 0, "patient_documents": 0, "patient_consents": 0}

            rows = conn.execute("SELECT payload FROM medical_records WHERE patient_id = ?", [dup]).fetchall()
            for (payload,) in rows:
                record = MedicalRecord.model_validate_json(payload, context=REHYDRATE).reassign(merged_primary.id)
                conn.execute(
                    "UPDATE medical_records SET patient_id = ?, payload = ? WHERE record_id = ?",
                    [primary_id, record.model_dump_json(), str(record.id)],
                )
                counts["medical_records"] += 1

            rows = conn.execute("SELECT payload FROM patient_documents WHERE patient_id = ?", [dup]).fetchall()
            for (payload,) in rows:
                document = Document.model_validate_json(payload, context=REHYDRATE).reassign(merged_primary.id)
                conn.execute(
                    "UPDATE patient_documents SET patient_id = ?, payload = ? WHERE document_id = ?",
                    [primary_id, document.model_dump_json(), str(document.id)],
                )
                counts["patient_documents"] += 1

            rows = conn.execute("SELECT payload FROM patient_consents WHERE patient_id = ?", [dup]).fetchall()
            for (payload,) in rows:
                consent = ConsentRecord.model_validate_json(payload, context=REHYDRATE).reassign(merged_primary.id)
                conn.execute(
                    "UPDATE patient_consents SET patient_id = ?, payload = ? WHERE consent_id = ?",
                    [primary_id, consent.model_dump_json(), consent.id],
                )
                counts["patient_consents"] += 1

            counts["patient_status_history_removed"] = self._scalar(
                conn, "SELECT COUNT(*) FROM patient_status_history WHERE patient_id = ?", [dup])
            conn.execute("DELETE FROM patient_status_history WHERE patient_id = ?", [dup])

            self._write_patient(conn, merged_primary)
            conn.execute("DELETE FROM patients WHERE patient_id = ?", [dup])
        return counts

    # ------------------------------------------------------------------
    # medical records
    # ------------------------------------------------------------------

    def save_medical_record(
        self,
        record: MedicalRecord,
        expected_updated_at: Optional[datetime] = None
    ) -> MedicalRecord:
        rid = str(record.id)
        with self._transaction("save_medical_record") as conn:
            self._require_patient(conn, record.patient_id, "medical record", "save")
            row = conn.execute("SELECT payload FROM medical_records WHERE record_id = ?", [rid]).fetchone()
            if expected_updated_at is not None:
                actual = MedicalRecord.model_validate_json(row[0], context=REHYDRATE).updated_at if row else None
                if actual != ensure_utc(expected_updated_at):
                    raise ConcurrencyConflictError("medical_record", rid, expected_updated_at, actual)
            if row is None:
                conn.execute(
                    "INSERT INTO medical_records (patient_id, payload, record_id) VALUES (?, ?, ?)",
                    [str(record.patient_id), record.model_dump_json(), rid],
                )
            else:
                conn.execute(
                    "UPDATE medical_records SET patient_id = ?, payload = ? WHERE record_id = ?",
                    [str(record.patient_id), record.model_dump_json(), rid],
                )
        return record

    def get_medical_record(self, record_id: MedicalRecordId) -> Optional[MedicalRecord]:
        with self._reading("get_medical_record") as conn:
            row = conn.execute(
                "SELECT payload FROM medical_records WHERE record_id = ?", [str(record_id)]
            ).fetchone()
        return MedicalRecord.model_validate_json(row[0], context=REHYDRATE) if row else None

    def list_medical_records(self, patient_id: PatientId) -> list[MedicalRecord]:
        with self._reading("list_medical_records") as conn:
            rows = conn.execute(
                "SELECT payload FROM medical_records WHERE patient_id = ?", [str(patient_id)]
            ).fetchall()
        records = [MedicalRecord.model_validate_json(row[0], context=REHYDRATE) for row in rows]
        return sorted(records, key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------

    def save_document(self, document: Document, expected_version: Optional[int] = None) -> Document:
        did = str(document.id)
        with self._transaction("save_document") as conn:
            self._require_patient(conn, document.patient_id, "document", "save")
            row = conn.execute("SELECT version FROM patient_documents WHERE document_id = ?", [did]).fetchone()
            if expected_version is not None:
                actual = row[0] if row else None
                if actual != expected_version:
                    raise ConcurrencyConflictError("document", did, expected_version, actual)
            values = [
                str(document.patient_id),
                document.status.value,
                document.metadata.version,
                document.model_dump_json(),
                did,
            ]
            if row is None:
                conn.execute(
                    "INSERT INTO patient_documents (patient_id, status, version, payload, document_id) "
                    "VALUES (?, ?, ?, ?, ?)",
                    values,
                )
            else:
                conn.execute(
                    "UPDATE patient_documents SET patient_id = ?, status = ?, version = ?, payload = ? "
                    "WHERE document_id = ?",
                    values,
                )
        return document

    def get_document(self, document_id: DocumentId) -> Optional[Document]:
        with self._reading("get_document") as conn:
            row = conn.execute(
                "SELECT payload FROM patient_documents WHERE document_id = ?", [str(document_id)]
            ).fetchone()
        return Document.model_validate_json(row[0], context=REHYDRATE) if row else None

    def list_documents(self, patient_id: Optional[PatientId] = None) -> list[Document]:
        query = "SELECT payload FROM patient_documents"
        params: list = []
        if patient_id is not None:
            query += " WHERE patient_id = ?"
            params.append(str(patient_id))
        with self._reading("list_documents") as conn:
            rows = conn.execute(query, params).fetchall()
        documents = [Document.model_validate_json(row[0], context=REHYDRATE) for row in rows]
        return sorted(documents, key=lambda d: d.uploaded_at)

    def delete_document(self, document_id: DocumentId) -> bool:
        did = str(document_id)
        with self._transaction("delete_document") as conn:
            if conn.execute("SELECT 1 FROM patient_documents WHERE document_id = ?", [did]).fetchone() is None:
                return False
            conn.execute("DELETE FROM document_encryption_metadata WHERE document_id = ?", [did])
            conn.execute("DELETE FROM patient_documents WHERE document_id = ?", [did])
        return True

    def save_encryption_metadata(self, metadata: EncryptionMetadata) -> None:
        key = [str(metadata.document_id), metadata.file_path]
        with self._transaction("save_encryption_metadata") as conn:
            exists = conn.execute(
                "SELECT 1 FROM document_encryption_metadata WHERE document_id = ? AND file_path = ?", key
            ).fetchone()
            if exists:
                conn.execute(
                    "UPDATE document_encryption_metadata SET payload = ? WHERE document_id = ? AND file_path = ?",
                    [metadata.model_dump_json()] + key,
                )
            else:
                conn.execute(
                    "INSERT INTO document_encryption_metadata (payload, document_id, file_path) VALUES (?, ?, ?)",
                    [metadata.model_dump_json()] + key,
                )

    def get_encryption_metadata(self, document_id: DocumentId, file_path: str) -> Optional[EncryptionMetadata]:
        with self._reading("get_encryption_metadata") as conn:
            row = conn.execute(
                "SELECT payload FROM document_encryption_metadata WHERE document_id = ? AND file_path = ?",
                [str(document_id), file_path],
            ).fetchone()
        return EncryptionMetadata.model_validate_json(row[0], context=REHYDRATE) if row else None

    def list_encryption_metadata(self, document_id: DocumentId) -> list[EncryptionMetadata]:
        with self._reading("list_encryption_metadata") as conn:
            rows = conn.execute(
                "SELECT payload FROM document_encryption_metadata WHERE document_id = ? ORDER BY file_path",
                [str(document_id)],
            ).fetchall()
        return [EncryptionMetadata.model_validate_json(row[0], context=REHYDRATE) for row in rows]

    def delete_encryption_metadata(self, document_id: DocumentId, file_path: Optional[str] = None) -> int:
        query = "FROM document_encryption_metadata WHERE document_id = ?"
        params = [str(document_id)]
        if file_path is not None:
            query += " AND file_path = ?"
            params.append(file_path)
        with self._transaction("delete_encryption_metadata") as conn:
            count = self._scalar(conn, f"SELECT COUNT(*) {query}", params)
            conn.execute(f"DELETE {query}", params)
        return count

    # ------------------------------------------------------------------
    # status ledger
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_transition(conn, transition: StatusTransition) -> None:
        conn.execute("""
            INSERT INTO patient_status_history (transition_id, patient_id, changed_at, seq, payload)
            VALUES (?, ?, ?, nextval('status_seq'), ?)
        """, [
            transition.id,
            str(transition.patient_id),
            to_naive_utc(transition.changed_at),
            transition.model_dump_json(),
        ])

    def append_status_transition(self, transition: StatusTransition) -> StatusTransition:
        with self._transaction("append_status_transition") as conn:
            self._require_patient(conn, transition.patient_id, "status transition", "append")
            self._insert_transition(conn, transition)
        return transition

    def apply_status_change(
        self,
        patient: Patient,
        transition: StatusTransition,
        expected_updated_at: Optional[datetime] = None
    ) -> Patient:
        with self._transaction("apply_status_change") as conn:
            self._require_patient(conn, patient.id, "status transition", "append")
            self._write_patient(conn, patient, expected_updated_at)
            self._insert_transition(conn, transition)
        return patient

    def list_status_transitions(
        self,
        patient_id: Optional[PatientId] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> list[StatusTransition]:
        query = "SELECT payload FROM patient_status_history WHERE 1=1"
        params: list = []
        if patient_id is not None:
            query += " AND patient_id = ?"
            params.append(str(patient_id))
        if start_date is not None:
            query += " AND changed_at >= ?"
            params.append(to_naive_utc(start_date))
        if end_date is not None:
            query += " AND changed_at <= ?"
            params.append(to_naive_utc(end_date))
        query += " ORDER BY changed_at, seq"

        with self._reading("list_status_transitions") as conn:
            rows = conn.execute(query, params).fetchall()
        return [StatusTransition.model_validate_json(row[0], context=REHYDRATE) for row in rows]

    # ------------------------------------------------------------------
    # consents
    # ------------------------------------------------------------------

    def save_consent(self, consent: ConsentRecord) -> ConsentRecord:
        with self._transaction("save_consent") as conn:
            self._require_patient(conn, consent.patient_id, "consent", "save")
            exists = conn.execute(
                "SELECT 1 FROM patient_consents WHERE consent_id = ?", [consent.id]
            ).fetchone()
            values = [str(consent.patient_id), consent.model_dump_json(), consent.id]
            if exists:
                conn.execute("UPDATE patient_consents SET patient_id = ?, payload = ? WHERE consent_id = ?", values)
            else:
                conn.execute("INSERT INTO patient_consents (patient_id, payload, consent_id) VALUES (?, ?, ?)", values)
        return consent

    def list_consents(self, patient_id: PatientId) -> list[ConsentRecord]:
        with self._reading("list_consents") as conn:
            rows = conn.execute(
                "SELECT payload FROM patient_consents WHERE patient_id = ?", [str(patient_id)]
            ).fetchall()
        consents = [ConsentRecord.model_validate_json(row[0], context=REHYDRATE) for row in rows]
        return sorted(consents, key=lambda c: c.granted_at)

    # ------------------------------------------------------------------
    # audit log
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditLogEntry) -> Result[str]:
        """Append one audit entry.

        Returns:
            Result[str]: Entry id or failure; never raises
        """
        try:
            with self._transaction("append_audit_entry") as conn:
                conn.execute("""
                    INSERT INTO audit_log (
                        log_id, seq, event_timestamp, user_id, patient_id,
                        operation, data_type, access_result, payload
                    ) VALUES (?, nextval('audit_log_seq'), ?, ?, ?, ?, ?, ?, ?)
                """, [
                    entry.id,
                    to_naive_utc(entry.timestamp),
                    entry.user_id,
                    entry.patient_id,
                    entry.operation,
                    entry.data_type,
                    entry.access_result.value,
                    entry.model_dump_json(),
                ])
            return Result.success_result(entry.id)
        except Exception as e:
            error_msg = f"Failed to append audit entry: {str(e)}"
            logger.error(error_msg)
            return Result.failure_result(
                StorageError(error_msg, operation="append_audit_entry"),
                error_type="StorageError"
            )

    def query_audit_entries(self, audit_filter: AuditLogFilter) -> tuple[list[AuditLogEntry], int]:
        where = " WHERE 1=1"
        params: list = []

        if audit_filter.user_id:
            where += " AND user_id = ?"
            params.append(audit_filter.user_id)
        if audit_filter.patient_id:
            where += " AND patient_id = ?"
            params.append(audit_filter.patient_id)
        if audit_filter.operation:
            where += " AND operation = ?"
            params.append(audit_filter.operation)
        if audit_filter.data_type:
            where += " AND data_type = ?"
            params.append(audit_filter.data_type)
        if audit_filter.access_result:
            where += " AND access_result = ?"
            params.append(audit_filter.access_result.value)
        if audit_filter.start_date:
            where += " AND event_timestamp >= ?"
            params.append(to_naive_utc(audit_filter.start_date))
        if audit_filter.end_date:
            where += " AND event_timestamp <= ?"
            params.append(to_naive_utc(audit_filter.end_date))

        # Only allow-listed column names reach the ORDER BY clause
        sort_column = AUDIT_SORT_COLUMNS.get(audit_filter.sort_by, "event_timestamp")
        if (audit_filter.sort_order or "DESC").upper() == "ASC":
            order = f" ORDER BY {sort_column} ASC NULLS LAST, seq ASC"
        else:
            order = f" ORDER BY {sort_column} DESC NULLS FIRST, seq ASC"

        query = "SELECT payload FROM audit_log" + where + order
        page_params = list(params)
        if audit_filter.limit is not None:
            query += " LIMIT ?"
            page_params.append(audit_filter.limit)
        query += " OFFSET ?"
        page_params.append(audit_filter.offset)

        with self._reading("query_audit_entries") as conn:
            total = self._scalar(conn, "SELECT COUNT(*) FROM audit_log" + where, params)
            rows = conn.execute(query, page_params).fetchall()
        return [AuditLogEntry.model_validate_json(row[0], context=REHYDRATE) for row in rows], total

    def delete_audit_entries_before(self, cutoff: datetime) -> int:
        params = [to_naive_utc(cutoff)]
        with self._transaction("delete_audit_entries_before") as conn:
            count = self._scalar(conn, "SELECT COUNT(*) FROM audit_log WHERE event_timestamp < ?", params)
            conn.execute("DELETE FROM audit_log WHERE event_timestamp < ?", params)
        return count

    # ------------------------------------------------------------------
    # consistency
    # ------------------------------------------------------------------

    def find_orphans(self) -> dict[str, list[str]]:
        checks = {
            "medical_records": ("record_id", "medical_records"),
            "patient_documents": ("document_id", "patient_documents"),
            "patient_status_history": ("transition_id", "patient_status_history"),
            "patient_consents": ("consent_id", "patient_consents"),
        }
        orphans: dict[str, list[str]] = {}
        with self._reading("find_orphans") as conn:
            for name, (id_column, table) in checks.items():
                rows = conn.execute(f"""
                    SELECT t.{id_column} FROM {table} t
                    WHERE NOT EXISTS (SELECT 1 FROM patients p WHERE p.patient_id = t.patient_id)
                    ORDER BY t.{id_column}
                """).fetchall()
                orphans[name] = [row[0] for row in rows]
        return orphans
