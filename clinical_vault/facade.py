"""Clinical Vault facade.

Single entry point wiring the domain services, the audit engine and the
secure document store onto one storage adapter. Outer layers (CLI, web
handlers, scripts) talk to ``ClinicalVault`` instead of assembling services
themselves.

Architecture:
    - Composition over the domain services; no business rules live here
    - Collaborators (blob store, tenant directory, virus scanner) are
      injected, so tests can run fully in memory
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from clinical_vault.domain.audit_models import AuditLogFilter, AuditLogsResponse, AuditStatistics, SecurityStatistics
from clinical_vault.domain.guardrails import SuspiciousActivityConfig, SuspiciousActivityDetector
from clinical_vault.domain.ports import BlobStorePort, StoragePort, TenantDirectoryPort, VirusScannerPort
from clinical_vault.domain.services import (
    ComplianceEngine,
    MedicalRecordManager,
    PatientRegistry,
    StatusTracker,
)
from clinical_vault.adapters.blob_store import InMemoryBlobStore
from clinical_vault.infrastructure.audit import AuditLogger
from clinical_vault.infrastructure.config_manager import AuditConfig, DocumentConfig, SecurityConfig
from clinical_vault.infrastructure.documents import SecureDocumentStore
from clinical_vault.infrastructure.encryption import EncryptionService
from clinical_vault.infrastructure.health import HealthResponse, check_system_health

logger = logging.getLogger(__name__)


class ClinicalVault:
    """Unified API over patients, status, records, documents and compliance.

    Example Usage:
        ```python
        vault = ClinicalVault(InMemoryStorageAdapter(), EncryptionService(StaticKeyProvider(key)))
        patient = vault.register_patient(registration, actor=user_id)
        vault.change_status(patient.id, "active", "First session", actor=user_id)
        record = vault.create_medical_record(patient.id, actor=user_id)
        ```

    Service objects stay reachable as attributes (``registry``,
    ``status_tracker``, ``records``, ``compliance``, ``documents``,
    ``audit``) for operations the facade does not forward.
    """

    def __init__(
        self,
        storage: StoragePort,
        encryption_service: EncryptionService,
        blob_store: Optional[BlobStorePort] = None,
        directory: Optional[TenantDirectoryPort] = None,
        virus_scanner: Optional[VirusScannerPort] = None,
        security_config: Optional[SecurityConfig] = None,
        audit_config: Optional[AuditConfig] = None,
        document_config: Optional[DocumentConfig] = None,
        db_type: str = "unknown"
    ):
        security_config = security_config or SecurityConfig()
        self.audit_config = audit_config or AuditConfig()
        self.storage = storage
        self.encryption_service = encryption_service
        self.blob_store = blob_store or InMemoryBlobStore()
        self.db_type = db_type

        detector = SuspiciousActivityDetector(SuspiciousActivityConfig(
            threshold=security_config.suspicious_threshold,
            window_minutes=security_config.suspicious_window_minutes,
        ))
        self.audit = AuditLogger(
            storage,
            encryption_service,
            detector=detector,
            alert_logger_name=self.audit_config.alert_logger_name,
        )
        self.registry = PatientRegistry(storage, self.audit)
        self.status_tracker = StatusTracker(storage, self.audit)
        self.records = MedicalRecordManager(storage, self.audit)
        self.compliance = ComplianceEngine(storage, self.audit, directory=directory, blob_store=self.blob_store)
        self.documents = SecureDocumentStore(
            storage,
            self.blob_store,
            encryption_service,
            audit=self.audit,
            virus_scanner=virus_scanner,
            directory=directory,
            document_config=document_config,
            confidential_roles=security_config.confidential_roles,
        )

    # ------------------------------------------------------------------
    # patients
    # ------------------------------------------------------------------

    def register_patient(self, registration, actor):
        return self.registry.register_patient(registration, actor)

    def update_patient(self, patient_id, update, actor, expected_updated_at: Optional[datetime] = None):
        return self.registry.update_patient(patient_id, update, actor, expected_updated_at)

    def get_patient(self, patient_id, actor=None):
        return self.registry.get_patient(patient_id, actor)

    def delete_patient(self, patient_id, actor):
        return self.registry.delete_patient(patient_id, actor)

    def search_patients(self, criteria):
        return self.registry.search_patients(criteria)

    def detect_duplicates(self, personal_info, exclude_id=None):
        return self.registry.detect_duplicates(personal_info, exclude_id)

    def merge_patients(self, primary_id, duplicate_id, actor, plan=None, expected_updated_at: Optional[datetime] = None):
        return self.registry.merge_patients(
            primary_id, duplicate_id, plan=plan, actor=actor, expected_updated_at=expected_updated_at,
        )

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------

    def change_status(self, patient_id, new_status, reason, actor, expected_updated_at: Optional[datetime] = None):
        return self.status_tracker.change_status(patient_id, new_status, reason, actor, expected_updated_at)

    def get_status_history(self, patient_id, start_date=None, end_date=None):
        return self.status_tracker.get_status_history(patient_id, start_date, end_date)

    def get_allowed_transitions(self, patient_id):
        return self.status_tracker.get_allowed_transitions(patient_id)

    def get_patients_by_status(self, status):
        return self.status_tracker.get_patients_by_status(status)

    def get_time_in_status(self, patient_id, now=None):
        return self.status_tracker.get_time_in_status(patient_id, now)

    def get_transition_patterns(self, start_date=None, end_date=None):
        return self.status_tracker.get_transition_patterns(start_date, end_date)

    def get_status_statistics(self, now=None):
        return self.status_tracker.get_status_statistics(now)

    # ------------------------------------------------------------------
    # medical records
    # ------------------------------------------------------------------

    def create_medical_record(self, patient_id, actor, **initial):
        return self.records.create_medical_record(patient_id, actor, **initial)

    def get_medical_record(self, record_id, actor=None):
        return self.records.get_medical_record(record_id, actor)

    def get_medical_history(self, patient_id, actor=None):
        return self.records.get_medical_history(patient_id, actor)

    def add_diagnosis(self, record_id, diagnosis, actor):
        return self.records.add_diagnosis(record_id, diagnosis, actor)

    def add_medication(self, record_id, medication, actor):
        return self.records.add_medication(record_id, medication, actor)

    def add_allergy(self, record_id, allergy, actor):
        return self.records.add_allergy(record_id, allergy, actor)

    def add_progress_note(self, record_id, note, actor):
        return self.records.add_progress_note(record_id, note, actor)

    def add_assessment(self, record_id, assessment, actor):
        return self.records.add_assessment(record_id, assessment, actor)

    def update_treatment_plan(self, record_id, plan, actor):
        return self.records.update_treatment_plan(record_id, plan, actor)

    def get_timeline(self, patient_id, actor=None):
        return self.records.get_timeline(patient_id, actor)

    def check_record_integrity(self, record_id):
        return self.records.check_record_integrity(record_id)

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------

    def upload_document(self, patient_id, file, upload, actor):
        return self.documents.upload_document(patient_id, file, upload, actor)

    def create_document_version(self, document_id, file, actor, note=None):
        return self.documents.create_document_version(document_id, file, actor, note)

    def update_document_metadata(self, document_id, changes: dict, actor, expected_version=None):
        return self.documents.update_document_metadata(document_id, changes, actor, expected_version)

    def process_document(self, document_id, actor=None):
        return self.documents.process_document(document_id, actor)

    def retrieve_file(self, file_path: str) -> bytes:
        return self.documents.retrieve_file(file_path)

    def download_document(self, document_id, actor, version=None) -> bytes:
        return self.documents.download_document(document_id, actor, version)

    def archive_document(self, document_id, actor):
        return self.documents.archive_document(document_id, actor)

    def archive_expired_documents(self, actor) -> int:
        return self.documents.archive_expired_documents(actor)

    def delete_document(self, document_id, actor) -> bool:
        return self.documents.delete_document(document_id, actor)

    def list_patient_documents(self, patient_id, include_archived: bool = True):
        return self.documents.list_patient_documents(patient_id, include_archived)

    def get_document_statistics(self, patient_id=None):
        return self.documents.get_document_statistics(patient_id)

    # ------------------------------------------------------------------
    # compliance
    # ------------------------------------------------------------------

    def record_consent(self, patient_id, consent_type, purpose, actor, **kwargs):
        return self.compliance.record_consent(patient_id, consent_type, purpose, actor, **kwargs)

    def withdraw_consent(self, patient_id, consent_type, actor):
        return self.compliance.withdraw_consent(patient_id, consent_type, actor)

    def get_active_consents(self, patient_id):
        return self.compliance.get_active_consents(patient_id)

    def check_data_access(self, user_id, patient_id, operation):
        return self.compliance.check_data_access(user_id, patient_id, operation)

    def export_patient_data(self, patient_id, export_format, actor):
        return self.compliance.export_patient_data(patient_id, export_format, actor)

    def request_data_deletion(self, patient_id, reason: str, actor):
        return self.compliance.request_data_deletion(patient_id, reason, actor)

    def report_incident(self, description: str, reported_by, affected_patient_ids: Iterable = (), severity: str = "high"):
        return self.compliance.report_incident(description, reported_by, affected_patient_ids, severity)

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def query_audit_logs(self, audit_filter: Optional[AuditLogFilter] = None) -> AuditLogsResponse:
        return self.audit.query_audit_logs(audit_filter)

    def export_audit_logs(self, audit_filter: Optional[AuditLogFilter] = None, export_format: str = "json") -> str:
        return self.audit.export_audit_logs(audit_filter, export_format)

    def purge_audit_logs(self, retention_years: Optional[int] = None) -> int:
        return self.audit.purge_old_logs(retention_years or self.audit_config.retention_years)

    def get_audit_statistics(self, start_date=None, end_date=None) -> AuditStatistics:
        return self.audit.generate_audit_statistics(start_date, end_date)

    def get_security_statistics(self, start_date=None, end_date=None) -> SecurityStatistics:
        return self.audit.generate_security_statistics(start_date, end_date)

    # ------------------------------------------------------------------
    # health
    # ------------------------------------------------------------------

    def check_health(self) -> HealthResponse:
        return check_system_health(self.storage, self.encryption_service, self.db_type)

    def close(self) -> None:
        self.storage.close()
