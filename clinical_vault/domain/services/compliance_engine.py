"""LGPD Compliance Engine.

Consent management, data-access checks, data portability (export), the right
to erasure (data deletion) and security-incident reporting.

Security Impact:
    - Every access check is audited, granted or denied, with the reason
    - Data deletion physically removes clinical data but keeps the audit trail
    - Exports contain document metadata only, never file contents

Architecture:
    - Domain service depending on StoragePort, AuditTrailPort and, when
      available, TenantDirectoryPort and BlobStorePort
    - Export rendering uses pandas for CSV and lxml for XML, the same
      tools the audit export uses
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Iterable, Optional, Union

import pandas as pd
from lxml import etree
from pydantic import BaseModel, Field

from clinical_vault.domain.audit_models import DATA_TYPE_LGPD
from clinical_vault.domain.compliance_models import (
    AccessDecision,
    ConsentRecord,
    DataDeletionReport,
    IncidentReport,
)
from clinical_vault.domain.enums import (
    AccessResult,
    ConsentType,
    DataOperation,
    ExportFormat,
    LegalBasis,
    LgpdEvent,
)
from clinical_vault.domain.errors import (
    ComplianceError,
    PatientNotFoundError,
    UnsupportedExportFormatError,
)
from clinical_vault.domain.identifiers import PatientId, UserId
from clinical_vault.domain.ports import AuditTrailPort, BlobStorePort, StoragePort, TenantDirectoryPort
from clinical_vault.domain.utils import utc_now

logger = logging.getLogger(__name__)

XML_NAME_PATTERN = re.compile(r"^(?!xml)[A-Za-z_][\w.-]*$", re.IGNORECASE)

CONSENT_REQUIRED_OPERATIONS = frozenset({DataOperation.READ, DataOperation.UPDATE, DataOperation.SHARE})

DEFAULT_OPERATION_ROLES: dict[DataOperation, frozenset] = {
    DataOperation.DELETE: frozenset({"admin"}),
    DataOperation.EXPORT: frozenset({"admin", "doctor", "therapist"}),
    DataOperation.SHARE: frozenset({"admin", "doctor", "therapist"}),
}


class PatientDataExport(BaseModel):
    """Data-portability package handed to the patient."""
    patient_id: str
    format: ExportFormat
    content: str
    generated_at: datetime = Field(default_factory=utc_now)
    sections: list[str] = Field(default_factory=list)


def parse_export_format(export_format: Union[ExportFormat, str]) -> ExportFormat:
    """Resolve a format name or raise ``UnsupportedExportFormatError``."""
    try:
        return ExportFormat(str(getattr(export_format, "value", export_format)).lower())
    except ValueError as e:
        raise UnsupportedExportFormatError(str(export_format)) from e


def append_xml(parent: etree._Element, tag: str, value: Any) -> None:
    """Append ``value`` under ``parent`` as nested elements.

    Keys that are not valid XML names (free-form assessment results, for
    instance) become ``<entry key="...">`` elements.
    """
    if XML_NAME_PATTERN.match(tag):
        element = etree.SubElement(parent, tag)
    else:
        element = etree.SubElement(parent, "entry", key=tag)
    if isinstance(value, dict):
        for key, item in value.items():
            append_xml(element, str(key), item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            append_xml(element, "item", item)
    elif value is not None:
        element.text = str(value)


def flatten_rows(section: str, value: Any, prefix: str = "") -> Iterable[dict]:
    """Yield ``{section, field, value}`` rows for every scalar in ``value``."""
    if isinstance(value, dict):
        for key, item in value.items():
            yield from flatten_rows(section, item, f"{prefix}.{key}" if prefix else str(key))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from flatten_rows(section, item, f"{prefix}[{index}]")
    else:
        yield {"section": section, "field": prefix, "value": "" if value is None else value}


class ComplianceEngine:
    """Service for LGPD obligations.

    Example Usage:
        ```python
        engine = ComplianceEngine(storage, audit_logger, tenant_directory)
        engine.record_consent(patient_id, ConsentType.DATA_PROCESSING, "Treatment", actor)
        decision = engine.check_data_access(user_id, patient_id, DataOperation.READ)
        export = engine.export_patient_data(patient_id, "json", actor)
        ```
    """

    def __init__(
        self,
        storage: StoragePort,
        audit: AuditTrailPort,
        directory: Optional[TenantDirectoryPort] = None,
        blob_store: Optional[BlobStorePort] = None,
        operation_roles: Optional[dict] = None
    ):
        self._storage = storage
        self._audit = audit
        self._directory = directory
        self._blob_store = blob_store
        self._operation_roles = operation_roles or DEFAULT_OPERATION_ROLES

    def _log_event(self, actor, event: LgpdEvent, patient_id, justification: str, **kwargs) -> None:
        self._audit.log_data_access(
            user_id=str(actor),
            operation=event.value,
            data_type=DATA_TYPE_LGPD,
            patient_id=str(patient_id) if patient_id is not None else None,
            justification=justification,
            **kwargs
        )

    def _require_patient(self, patient_id, include_deleted: bool = False):
        try:
            pid = PatientId.coerce(patient_id)
        except ValueError as e:
            raise PatientNotFoundError(patient_id) from e
        patient = self._storage.get_patient(pid, include_deleted=include_deleted)
        if patient is None:
            raise PatientNotFoundError(pid)
        return patient

    # ------------------------------------------------------------------
    # consent
    # ------------------------------------------------------------------

    def record_consent(
        self,
        patient_id: Union[PatientId, str],
        consent_type: Union[ConsentType, str],
        purpose: str,
        actor: Union[UserId, str],
        legal_basis: Union[LegalBasis, str] = LegalBasis.CONSENT,
        expires_at: Optional[datetime] = None
    ) -> ConsentRecord:
        """Record a granted consent.

        Raises:
            ReferentialIntegrityError: If the patient does not exist
        """
        consent = ConsentRecord(
            patient_id=PatientId.coerce(patient_id),
            consent_type=ConsentType(consent_type),
            legal_basis=LegalBasis(legal_basis),
            purpose=purpose,
            expires_at=expires_at,
            recorded_by=UserId.coerce(actor),
        )
        self._storage.save_consent(consent)
        self._log_event(
            actor, LgpdEvent.CONSENT_GRANTED, consent.patient_id,
            f"Consent granted for {consent.consent_type.value}",
            new_values={"consent_id": consent.id, "legal_basis": consent.legal_basis.value},
        )
        return consent

    def withdraw_consent(
        self,
        patient_id: Union[PatientId, str],
        consent_type: Union[ConsentType, str],
        actor: Union[UserId, str]
    ) -> ConsentRecord:
        """Withdraw the latest consent of ``consent_type``.

        Raises:
            ComplianceError: If no consent exists or it was already withdrawn
        """
        consent_type = ConsentType(consent_type)
        pid = PatientId.coerce(patient_id)
        matching = [c for c in self._storage.list_consents(pid) if c.consent_type == consent_type]
        if not matching:
            raise ComplianceError("Consent record not found", details={"patient_id": str(pid)})
        latest = matching[-1]
        if latest.is_withdrawn or not latest.granted:
            raise ComplianceError("Consent already withdrawn", details={"consent_id": latest.id})

        withdrawn = latest.withdraw()
        self._storage.save_consent(withdrawn)
        self._log_event(
            actor, LgpdEvent.CONSENT_WITHDRAWN, pid,
            f"Consent withdrawn for {consent_type.value}",
            old_values={"granted": True},
            new_values={"granted": False, "consent_id": latest.id},
        )
        return withdrawn

    def get_active_consents(
        self,
        patient_id: Union[PatientId, str],
        now: Optional[datetime] = None
    ) -> list[ConsentRecord]:
        consents = self._storage.list_consents(PatientId.coerce(patient_id))
        return [c for c in consents if c.is_active(now)]

    def has_consent(self, patient_id, consent_type: ConsentType = ConsentType.DATA_PROCESSING) -> bool:
        return any(c.consent_type == consent_type for c in self.get_active_consents(patient_id))

    # ------------------------------------------------------------------
    # access checks
    # ------------------------------------------------------------------

    def _has_permission(self, user_id: str, patient_id: str, operation: DataOperation) -> bool:
        if self._directory is None:
            return True
        if not self._directory.shares_tenant(user_id, patient_id):
            return False
        role = self._directory.get_role(user_id)
        if role is None:
            return False
        required = self._operation_roles.get(operation)
        return required is None or role in required

    def check_data_access(
        self,
        user_id: Union[UserId, str],
        patient_id: Union[PatientId, str],
        operation: Union[DataOperation, str]
    ) -> AccessDecision:
        """Decide whether ``user_id`` may perform ``operation`` on the patient.

        Checks run in order: patient exists, tenant and role permit the
        operation, active ``data_processing`` consent for read/update/share.
        Every decision is written to the audit trail.
        """
        operation = DataOperation(operation)
        user = str(user_id)
        patient = str(patient_id)
        requires_consent = operation in CONSENT_REQUIRED_OPERATIONS

        try:
            exists = self._storage.patient_exists(PatientId.coerce(patient_id))
        except ValueError:
            exists = False

        if not exists:
            reason = "Patient not found"
        elif not self._has_permission(user, patient, operation):
            reason = "Insufficient permissions"
        elif requires_consent and not self.has_consent(patient):
            reason = "No consent for data processing"
        else:
            reason = "Access authorized"

        allowed = reason == "Access authorized"
        self._audit.log_data_access(
            user_id=user,
            operation=operation.value,
            data_type="patient_data",
            patient_id=patient,
            access_result=AccessResult.GRANTED if allowed else AccessResult.DENIED,
            justification=reason,
        )
        return AccessDecision(
            allowed=allowed,
            reason=reason,
            user_id=user,
            patient_id=patient,
            operation=operation,
            requires_consent=requires_consent,
        )

    # ------------------------------------------------------------------
    # portability and erasure
    # ------------------------------------------------------------------

    def collect_patient_data(self, patient_id: Union[PatientId, str]) -> dict:
        """Everything stored about a patient as JSON-compatible data."""
        patient = self._require_patient(patient_id, include_deleted=True)
        records = self._storage.list_medical_records(patient.id)
        documents = self._storage.list_documents(patient.id)
        return {
            "patient": patient.model_dump(mode="json"),
            "medical_records": [r.model_dump(mode="json") for r in records],
            "documents": [
                d.model_dump(mode="json", include={
                    "id", "file_name", "mime_type", "file_size", "metadata", "status", "uploaded_at",
                })
                for d in documents
            ],
            "consents": [c.model_dump(mode="json") for c in self._storage.list_consents(patient.id)],
            "status_history": [
                t.model_dump(mode="json") for t in self._storage.list_status_transitions(patient.id)
            ],
        }

    def export_patient_data(
        self,
        patient_id: Union[PatientId, str],
        export_format: Union[ExportFormat, str],
        actor: Union[UserId, str]
    ) -> PatientDataExport:
        """Render a data-portability package in json, xml or csv.

        Raises:
            UnsupportedExportFormatError: For any other format
            PatientNotFoundError: If the patient does not exist
        """
        fmt = parse_export_format(export_format)
        data = self.collect_patient_data(patient_id)

        if fmt == ExportFormat.JSON:
            content = json.dumps(data, indent=2, ensure_ascii=False)
        elif fmt == ExportFormat.XML:
            root = etree.Element("patientData")
            for section, value in data.items():
                append_xml(root, section, value)
            content = etree.tostring(root, encoding="unicode")
        else:
            rows = [row for section, value in data.items() for row in flatten_rows(section, value)]
            content = pd.DataFrame(rows, columns=["section", "field", "value"]).to_csv(index=False)

        pid = data["patient"]["id"]
        self._log_event(actor, LgpdEvent.DATA_EXPORT, pid, f"Data portability export in {fmt.value} format")
        return PatientDataExport(patient_id=pid, format=fmt, content=content, sections=list(data))

    def request_data_deletion(
        self,
        patient_id: Union[PatientId, str],
        reason: str,
        actor: Union[UserId, str]
    ) -> DataDeletionReport:
        """Erase a patient and all dependents; the audit trail is preserved."""
        if not reason or not reason.strip():
            raise ComplianceError("A reason is required for data deletion")
        patient = self._require_patient(patient_id, include_deleted=True)

        blob_paths = []
        if self._blob_store is not None:
            for document in self._storage.list_documents(patient.id):
                blob_paths.extend({v.file_path for v in document.versions} | {document.file_path})

        counts = self._storage.cascade_delete_patient(patient.id)

        removed_blobs = 0
        for path in blob_paths:
            if self._blob_store.delete(path):
                removed_blobs += 1
        if self._blob_store is not None:
            counts["blobs"] = removed_blobs

        self._log_event(
            actor, LgpdEvent.DATA_DELETION, patient.id,
            f"Data deletion request processed: {reason.strip()}",
            new_values={"deleted_counts": counts},
        )
        logger.info(f"Erased patient {patient.id}: {counts}")
        return DataDeletionReport(
            patient_id=str(patient.id),
            requested_by=str(actor),
            reason=reason.strip(),
            deleted_counts=counts,
        )

    # ------------------------------------------------------------------
    # incidents
    # ------------------------------------------------------------------

    def report_incident(
        self,
        description: str,
        reported_by: Union[UserId, str],
        affected_patient_ids: Iterable[Union[PatientId, str]] = (),
        severity: str = "high"
    ) -> IncidentReport:
        """Record a security incident as ``breach_detected`` audit entries."""
        report = IncidentReport(
            description=description,
            affected_patient_ids=[str(p) for p in affected_patient_ids],
            severity=severity,
            reported_by=str(reported_by),
            notification_required=severity.lower() in ("high", "critical"),
        )
        targets = report.affected_patient_ids or [None]
        for patient_id in targets:
            self._log_event(
                reported_by, LgpdEvent.BREACH_DETECTED, patient_id,
                f"Security incident reported ({report.severity})",
                new_values={"incident_id": report.id, "description": report.description},
            )
        if report.notification_required:
            logger.critical(
                f"Security incident {report.id} ({report.severity}) affects "
                f"{len(report.affected_patient_ids)} patient(s); notification required"
            )
        return report
