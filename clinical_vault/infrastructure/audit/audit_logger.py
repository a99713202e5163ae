"""Audit Logging Engine.

Writes one write-once entry per clinical data operation, encrypts the
before/after payloads, watches denied accesses for suspicious patterns and
serves the compliance views of the trail (query, statistics, export, purge).

Security Impact:
    - ``old_values``/``new_values`` are Fernet-encrypted before they reach
      storage; when encryption fails a placeholder is stored instead of the
      plaintext
    - Writing an entry never raises into the business operation it
      describes; failures go to the alert logger and the ``on_failure`` hook
    - Repeated denials for the same user and patient persist a
      ``security_alert`` entry

Architecture:
    - Infrastructure implementation of ``AuditTrailPort``
    - Depends on StoragePort for persistence and EncryptionService for payloads
    - Statistics and CSV rendering use pandas, XML rendering uses lxml
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

import pandas as pd
from lxml import etree

from clinical_vault.domain.audit_models import (
    DATA_TYPE_AUDIT_LOG,
    DATA_TYPE_LGPD,
    DATA_TYPE_SECURITY,
    PURGE_OPERATION,
    SECURITY_ALERT_OPERATION,
    SYSTEM_USER,
    AuditLogEntry,
    AuditLogFilter,
    AuditLogsResponse,
    AuditStatistics,
    PaginationMeta,
    PatientAccessCount,
    RequestContext,
    SecurityStatistics,
)
from clinical_vault.domain.enums import AccessResult, ExportFormat, LgpdEvent
from clinical_vault.domain.errors import EncryptionError
from clinical_vault.domain.guardrails import SuspiciousActivityDetector
from clinical_vault.domain.ports import AuditTrailPort, Result, StoragePort
from clinical_vault.domain.services.compliance_engine import append_xml, parse_export_format
from clinical_vault.domain.utils import add_years, utc_now
from clinical_vault.infrastructure.encryption.encryption_service import EncryptionService
from clinical_vault.infrastructure.logging_config import ALERT_LOGGER_NAME

logger = logging.getLogger(__name__)

ENCRYPTION_FAILED_PREFIX = "[ENCRYPTION_FAILED"
DECRYPTION_FAILED = "[DECRYPTION_FAILED]"

CSV_EXPORT_COLUMNS = [
    "id", "userId", "patientId", "operation", "dataType",
    "accessResult", "timestamp", "justification",
]

TOP_PATIENTS_LIMIT = 10

FailureCallback = Callable[[AuditLogEntry, str], None]


class AuditLogger(AuditTrailPort):
    """Audit engine backed by a StoragePort.

    Example Usage:
        ```python
        audit = AuditLogger(storage, encryption_service)
        audit.log_data_access(
            user_id="dr-ana", operation="read", data_type="patient_data",
            patient_id=str(patient.id),
        )
        stats = audit.generate_audit_statistics()
        csv_text = audit.export_audit_logs(AuditLogFilter(limit=None), "csv")
        ```
    """

    def __init__(
        self,
        storage: StoragePort,
        encryption_service: EncryptionService,
        detector: Optional[SuspiciousActivityDetector] = None,
        on_failure: Optional[FailureCallback] = None,
        alert_logger_name: str = ALERT_LOGGER_NAME
    ):
        self.storage = storage
        self.encryption_service = encryption_service
        self.detector = detector or SuspiciousActivityDetector()
        self.on_failure = on_failure
        self.alert_logger = logging.getLogger(alert_logger_name)

    # ------------------------------------------------------------------
    # payload protection
    # ------------------------------------------------------------------

    def _protect(self, values: Any) -> Optional[str]:
        if values is None:
            return None
        try:
            return self.encryption_service.encrypt_record(values)
        except EncryptionError as e:
            return f"{ENCRYPTION_FAILED_PREFIX}: {e.message}]"

    def _reveal(self, stored: Any) -> Any:
        if not isinstance(stored, str) or stored.startswith(ENCRYPTION_FAILED_PREFIX):
            return stored
        try:
            return self.encryption_service.decrypt_record(stored)
        except EncryptionError:
            return DECRYPTION_FAILED

    def _decrypted(self, entry: AuditLogEntry) -> AuditLogEntry:
        return entry.model_copy(update={
            "old_values": self._reveal(entry.old_values),
            "new_values": self._reveal(entry.new_values),
        })

    # ------------------------------------------------------------------
    # writing
    # ------------------------------------------------------------------

    def _report_failure(self, entry: Optional[AuditLogEntry], reason: str) -> None:
        self.alert_logger.error(
            f"Audit write failed for operation "
            f"{entry.operation if entry else 'unknown'}: {reason}"
        )
        if self.on_failure is not None and entry is not None:
            try:
                self.on_failure(entry, reason)
            except Exception as e:
                self.alert_logger.error(f"Audit failure callback raised {type(e).__name__}: {e}")

    def _write(self, entry: AuditLogEntry) -> Result[str]:
        try:
            result = self.storage.append_audit_entry(entry)
        except Exception as e:
            result = Result.failure_result(f"{type(e).__name__}: {e}", error_type="AuditError")
        if result.is_failure():
            self._report_failure(entry, result.error or "unknown error")
        return result

    def log_data_access(
        self,
        user_id: str,
        operation: str,
        data_type: str,
        patient_id: Optional[str] = None,
        access_result: AccessResult = AccessResult.GRANTED,
        old_values=None,
        new_values=None,
        justification: Optional[str] = None,
        context: Optional[RequestContext] = None
    ) -> Result[str]:
        """Record one data operation.

        Returns:
            Result with the entry id, or a failure result; never raises
        """
        entry: Optional[AuditLogEntry] = None
        try:
            context = context or RequestContext()
            entry = AuditLogEntry(
                user_id=str(user_id),
                patient_id=str(patient_id) if patient_id is not None else None,
                operation=str(getattr(operation, "value", operation)),
                data_type=data_type,
                access_result=access_result,
                justification=justification,
                old_values=self._protect(old_values),
                new_values=self._protect(new_values),
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                session_id=context.session_id,
                request_id=context.request_id,
            )
        except Exception as e:
            reason = f"Invalid audit entry: {str(e)}"
            self._report_failure(entry, reason)
            return Result.failure_result(reason, error_type="AuditError")

        result = self._write(entry)
        if entry.access_result == AccessResult.DENIED:
            self._check_suspicious_activity(entry)
        return result

    def _check_suspicious_activity(self, entry: AuditLogEntry) -> None:
        try:
            since = self.detector.window_start()
            recent, _ = self.storage.query_audit_entries(AuditLogFilter(
                user_id=entry.user_id,
                patient_id=entry.patient_id,
                access_result=AccessResult.DENIED,
                start_date=since,
                limit=None,
            ))
            denied = sum(
                1 for e in recent
                if e.operation != SECURITY_ALERT_OPERATION and e.patient_id == entry.patient_id
            )
            if not self.detector.should_alert(entry.user_id, entry.patient_id, denied):
                return

            alert = AuditLogEntry(
                user_id=entry.user_id,
                patient_id=entry.patient_id,
                operation=SECURITY_ALERT_OPERATION,
                data_type=DATA_TYPE_SECURITY,
                access_result=AccessResult.DENIED,
                justification="Security alert: excessive_failed_attempts",
                new_values=self._protect({
                    "alert_type": "excessive_failed_attempts",
                    "failed_attempts": denied,
                    "window_minutes": self.detector.config.window_minutes,
                }),
            )
            self.alert_logger.warning(
                f"Security alert: {denied} denied accesses by user {entry.user_id} "
                f"for patient {entry.patient_id}"
            )
            self._write(alert)
        except Exception as e:
            self.alert_logger.error(f"Suspicious activity detection failed: {type(e).__name__}: {e}")

    def log_data_modification(
        self,
        user_id: str,
        patient_id: str,
        operation: str,
        data_type: str,
        old_values=None,
        new_values=None,
        justification: Optional[str] = None
    ) -> Result[str]:
        return self.log_data_access(
            user_id=user_id,
            operation=operation,
            data_type=data_type,
            patient_id=patient_id,
            old_values=old_values,
            new_values=new_values,
            justification=justification,
        )

    def log_authentication_event(
        self,
        user_id: str,
        event: str,
        success: bool,
        context: Optional[RequestContext] = None,
        details: Optional[dict] = None
    ) -> Result[str]:
        """Record a login/logout style event (no patient subject)."""
        return self.log_data_access(
            user_id=user_id,
            operation=event,
            data_type="authentication",
            access_result=AccessResult.GRANTED if success else AccessResult.DENIED,
            new_values=details,
            justification=f"Authentication {event} {'succeeded' if success else 'failed'}",
            context=context,
        )

    def log_lgpd_event(
        self,
        user_id: str,
        event: Union[LgpdEvent, str],
        patient_id: Optional[str] = None,
        details: Optional[dict] = None,
        justification: Optional[str] = None
    ) -> Result[str]:
        event = LgpdEvent(getattr(event, "value", event))
        return self.log_data_access(
            user_id=user_id,
            operation=event.value,
            data_type=DATA_TYPE_LGPD,
            patient_id=patient_id,
            new_values=details,
            justification=justification or f"LGPD event: {event.value}",
        )

    # ------------------------------------------------------------------
    # reading
    # ------------------------------------------------------------------

    def query_audit_logs(self, audit_filter: Optional[AuditLogFilter] = None) -> AuditLogsResponse:
        """Filtered, sorted, paginated entries with payloads decrypted."""
        audit_filter = audit_filter or AuditLogFilter()
        entries, total = self.storage.query_audit_entries(audit_filter)
        limit = audit_filter.limit
        offset = audit_filter.offset
        pagination = PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            has_next=limit is not None and (offset + limit) < total,
            has_previous=offset > 0,
        )
        return AuditLogsResponse(logs=[self._decrypted(e) for e in entries], pagination=pagination)

    def _entries_frame(self, start_date: Optional[datetime], end_date: Optional[datetime]) -> pd.DataFrame:
        entries, _ = self.storage.query_audit_entries(AuditLogFilter(
            start_date=start_date,
            end_date=end_date,
            limit=None,
            sort_by="timestamp",
            sort_order="ASC",
        ))
        return pd.DataFrame(
            [
                {
                    "user_id": e.user_id,
                    "patient_id": e.patient_id,
                    "operation": e.operation,
                    "access_result": e.access_result.value,
                    "is_system": e.is_system_event,
                }
                for e in entries
            ],
            columns=["user_id", "patient_id", "operation", "access_result", "is_system"],
        )

    def generate_audit_statistics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> AuditStatistics:
        """Totals, operation histogram and the ten most accessed patients.

        System events are excluded from the patient ranking; patients with
        equal counts keep the order in which they were first seen.
        """
        df = self._entries_frame(start_date, end_date)
        if df.empty:
            return AuditStatistics(
                total_entries=0, unique_users=0, denied_accesses=0,
                operation_counts={}, top_accessed_patients=[],
                period_start=start_date, period_end=end_date,
            )

        patients = df.loc[~df["is_system"], "patient_id"]
        counts = patients.value_counts(sort=False)
        first_seen = {pid: i for i, pid in enumerate(patients.drop_duplicates())}
        ranked = sorted(counts.items(), key=lambda item: (-item[1], first_seen[item[0]]))

        return AuditStatistics(
            total_entries=len(df),
            unique_users=int(df["user_id"].nunique()),
            denied_accesses=int((df["access_result"] == AccessResult.DENIED.value).sum()),
            operation_counts={k: int(v) for k, v in df["operation"].value_counts(sort=False).items()},
            top_accessed_patients=[
                PatientAccessCount(patient_id=str(pid), access_count=int(n))
                for pid, n in ranked[:TOP_PATIENTS_LIMIT]
            ],
            period_start=start_date,
            period_end=end_date,
        )

    def generate_security_statistics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> SecurityStatistics:
        df = self._entries_frame(start_date, end_date)
        if df.empty:
            return SecurityStatistics(
                denied_accesses=0, security_alerts=0, top_denied_users={},
                period_start=start_date, period_end=end_date,
            )

        alerts = df["operation"] == SECURITY_ALERT_OPERATION
        denied = df[(df["access_result"] == AccessResult.DENIED.value) & ~alerts]
        top_users = denied["user_id"].value_counts().head(TOP_PATIENTS_LIMIT)
        return SecurityStatistics(
            denied_accesses=len(denied),
            security_alerts=int(alerts.sum()),
            top_denied_users={str(k): int(v) for k, v in top_users.items()},
            period_start=start_date,
            period_end=end_date,
        )

    def export_audit_logs(
        self,
        audit_filter: Optional[AuditLogFilter] = None,
        export_format: Union[ExportFormat, str] = ExportFormat.JSON
    ) -> str:
        """Render matching entries as json, csv or xml.

        Raises:
            UnsupportedExportFormatError: For any other format
        """
        fmt = parse_export_format(export_format)
        logs = self.query_audit_logs(audit_filter or AuditLogFilter(limit=None)).logs

        if fmt == ExportFormat.JSON:
            return json.dumps([log.model_dump(mode="json") for log in logs], indent=2)

        if fmt == ExportFormat.CSV:
            rows = [
                {
                    "id": log.id,
                    "userId": log.user_id,
                    "patientId": log.patient_id or "",
                    "operation": log.operation,
                    "dataType": log.data_type,
                    "accessResult": log.access_result.value,
                    "timestamp": log.timestamp.isoformat(),
                    "justification": log.justification or "",
                }
                for log in logs
            ]
            return pd.DataFrame(rows, columns=CSV_EXPORT_COLUMNS).to_csv(index=False)

        root = etree.Element("auditLogs")
        for log in logs:
            element = etree.SubElement(root, "auditLog")
            for key, value in log.model_dump(mode="json").items():
                append_xml(element, key, value)
        return etree.tostring(root, encoding="unicode")

    # ------------------------------------------------------------------
    # retention
    # ------------------------------------------------------------------

    def purge_old_logs(self, retention_years: int = 7, now: Optional[datetime] = None) -> int:
        """Delete entries older than the retention period.

        Entries stamped exactly at the cutoff (``now`` minus the retention
        years) are kept.

        Returns:
            Number of deleted entries
        """
        if retention_years < 1:
            raise ValueError("retention_years must be at least 1")
        cutoff = add_years(now or utc_now(), -retention_years)
        purged = self.storage.delete_audit_entries_before(cutoff)
        logger.info(f"Purged {purged} audit entries older than {retention_years} years")

        self.log_data_access(
            user_id=SYSTEM_USER,
            operation=PURGE_OPERATION,
            data_type=DATA_TYPE_AUDIT_LOG,
            new_values={"purged": purged, "cutoff": cutoff.isoformat()},
            justification=f"Purged {purged} audit logs older than {retention_years} years",
        )
        return purged
