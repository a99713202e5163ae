"""Unit tests for AuditLogger."""

import csv
import io
import json
from datetime import timedelta
from unittest.mock import Mock

import pytest
from defusedxml import ElementTree as SafeET

from clinical_vault.adapters.storage import DuckDBAdapter, InMemoryStorageAdapter
from clinical_vault.domain.audit_models import (
    PURGE_OPERATION,
    SECURITY_ALERT_OPERATION,
    SYSTEM_USER,
    AuditLogEntry,
    AuditLogFilter,
    RequestContext,
)
from clinical_vault.domain.enums import AccessResult, LgpdEvent
from clinical_vault.domain.errors import UnsupportedExportFormatError
from clinical_vault.domain.guardrails import SuspiciousActivityConfig, SuspiciousActivityDetector
from clinical_vault.domain.ports import Result
from clinical_vault.domain.utils import add_years, utc_now
from clinical_vault.infrastructure.audit import AuditLogger


class TestWriting:

    def test_log_data_access(self, audit, storage):
        result = audit.log_data_access(
            user_id="dr-ana", operation="read", data_type="patient_data", patient_id="p-1",
            context=RequestContext(ip_address="10.0.0.1", session_id="s-1"),
        )
        assert result.is_success()

        entries, total = storage.query_audit_entries(AuditLogFilter())
        assert total == 1
        assert entries[0].id == result.value
        assert entries[0].ip_address == "10.0.0.1"
        assert entries[0].session_id == "s-1"

    def test_payloads_encrypted_at_rest(self, audit, storage):
        audit.log_data_modification(
            "dr-ana", "p-1", "update", "patient_data",
            old_values={"city": "Campinas"}, new_values={"city": "Santos"},
        )

        stored = storage.query_audit_entries(AuditLogFilter())[0][0]
        assert "Santos" not in stored.new_values
        assert "Campinas" not in stored.old_values

        view = audit.query_audit_logs().logs[0]
        assert view.new_values == {"city": "Santos"}
        assert view.old_values == {"city": "Campinas"}

    def test_invalid_entry_is_reported_not_raised(self, audit):
        result = audit.log_data_access(user_id="  ", operation="read", data_type="patient_data")
        assert result.is_failure()
        assert result.error_type == "AuditError"

    def test_storage_failure_never_raises(self, encryption_service):
        storage = Mock()
        storage.append_audit_entry.return_value = Result.failure_result("disk full", error_type="StorageError")
        on_failure = Mock()
        audit = AuditLogger(storage, encryption_service, on_failure=on_failure)

        result = audit.log_data_access(user_id="dr-ana", operation="read", data_type="patient_data")

        assert result.is_failure()
        on_failure.assert_called_once()
        entry, reason = on_failure.call_args[0]
        assert entry.operation == "read"
        assert reason == "disk full"

    def test_storage_exception_never_raises(self, encryption_service):
        storage = Mock()
        storage.append_audit_entry.side_effect = RuntimeError("connection lost")
        audit = AuditLogger(storage, encryption_service)

        result = audit.log_data_access(user_id="dr-ana", operation="read", data_type="patient_data")
        assert result.is_failure()
        assert "connection lost" in result.error

    def test_failing_callback_is_contained(self, encryption_service):
        storage = Mock()
        storage.append_audit_entry.return_value = Result.failure_result("disk full")
        audit = AuditLogger(storage, encryption_service, on_failure=Mock(side_effect=RuntimeError("boom")))

        assert audit.log_data_access(user_id="dr-ana", operation="read", data_type="patient_data").is_failure()

    def test_lgpd_event(self, audit):
        audit.log_lgpd_event("dr-ana", LgpdEvent.DATA_EXPORT, patient_id="p-1", details={"format": "json"})
        log = audit.query_audit_logs().logs[0]
        assert log.operation == "data_export"
        assert log.data_type == "lgpd_compliance"
        assert log.justification == "LGPD event: data_export"
        assert log.new_values == {"format": "json"}

    def test_unknown_lgpd_event(self, audit):
        with pytest.raises(ValueError):
            audit.log_lgpd_event("dr-ana", "data_sale")

    def test_authentication_event(self, audit):
        audit.log_authentication_event("dr-ana", "login", success=False)
        log = audit.query_audit_logs().logs[0]
        assert log.access_result == AccessResult.DENIED
        assert log.patient_id is None
        assert log.justification == "Authentication login failed"


class TestSuspiciousActivity:

    @pytest.fixture
    def audit(self, storage, encryption_service):
        detector = SuspiciousActivityDetector(SuspiciousActivityConfig(threshold=3, window_minutes=60))
        return AuditLogger(storage, encryption_service, detector=detector)

    def deny(self, audit, user="intruder", patient="p-1"):
        audit.log_data_access(
            user_id=user, operation="read", data_type="patient_data",
            patient_id=patient, access_result=AccessResult.DENIED,
        )

    def alerts(self, audit):
        return audit.query_audit_logs(AuditLogFilter(operation=SECURITY_ALERT_OPERATION)).logs

    def test_alert_at_threshold(self, audit):
        self.deny(audit)
        self.deny(audit)
        assert self.alerts(audit) == []

        self.deny(audit)
        alerts = self.alerts(audit)
        assert len(alerts) == 1
        assert alerts[0].access_result == AccessResult.DENIED
        assert alerts[0].user_id == "intruder"
        assert alerts[0].new_values["failed_attempts"] == 3

    def test_one_alert_per_window(self, audit):
        for _ in range(6):
            self.deny(audit)
        assert len(self.alerts(audit)) == 1

    def test_pairs_are_independent(self, audit):
        for patient in ("p-1", "p-2", "p-1", "p-2"):
            self.deny(audit, patient=patient)
        assert self.alerts(audit) == []

    def test_granted_accesses_do_not_count(self, audit):
        for _ in range(5):
            audit.log_data_access(user_id="intruder", operation="read", data_type="patient_data", patient_id="p-1")
        assert self.alerts(audit) == []


class TestReporting:

    @pytest.fixture
    def populated(self, audit):
        for patient in ("p-1", "p-2", "p-1", "p-3", "p-1", "p-2"):
            audit.log_data_access(user_id="dr-ana", operation="read", data_type="patient_data", patient_id=patient)
        audit.log_data_access(
            user_id="dr-bia", operation="update", data_type="patient_data",
            patient_id="p-3", access_result=AccessResult.DENIED,
        )
        audit.log_data_access(user_id=SYSTEM_USER, operation="maintenance", data_type="audit_log")
        return audit

    def test_audit_statistics(self, populated):
        stats = populated.generate_audit_statistics()

        assert stats.total_entries == 8
        assert stats.unique_users == 3
        assert stats.denied_accesses == 1
        assert stats.operation_counts == {"read": 6, "update": 1, "maintenance": 1}
        assert [(p.patient_id, p.access_count) for p in stats.top_accessed_patients] == [
            ("p-1", 3), ("p-2", 2), ("p-3", 2),
        ]

    def test_empty_statistics(self, audit):
        stats = audit.generate_audit_statistics()
        assert stats.total_entries == 0
        assert stats.top_accessed_patients == []

    def test_security_statistics(self, populated):
        stats = populated.generate_security_statistics()
        assert stats.denied_accesses == 1
        assert stats.security_alerts == 0
        assert stats.top_denied_users == {"dr-bia": 1}

    def test_pagination(self, populated):
        page = populated.query_audit_logs(AuditLogFilter(limit=3, offset=3))
        assert len(page.logs) == 3
        assert page.pagination.total == 8
        assert page.pagination.has_next
        assert page.pagination.has_previous

    def test_export_json(self, populated):
        data = json.loads(populated.export_audit_logs(AuditLogFilter(limit=None), "json"))
        assert len(data) == 8

    def test_export_csv(self, populated):
        rows = list(csv.DictReader(io.StringIO(populated.export_audit_logs(AuditLogFilter(user_id="dr-bia"), "csv"))))
        assert len(rows) == 1
        assert rows[0]["accessResult"] == "denied"
        assert rows[0]["patientId"] == "p-3"

    def test_export_xml(self, populated):
        root = SafeET.fromstring(populated.export_audit_logs(AuditLogFilter(operation="update"), "xml"))
        assert root.tag == "auditLogs"
        assert len(root.findall("auditLog")) == 1

    def test_export_unsupported(self, populated):
        with pytest.raises(UnsupportedExportFormatError):
            populated.export_audit_logs(export_format="pdf")


class TestRetention:

    def test_purge_old_logs(self, audit, storage):
        storage.append_audit_entry(AuditLogEntry(
            user_id="dr-ana", operation="read", data_type="patient_data", patient_id="p-1",
            timestamp=add_years(utc_now(), -8),
        ))
        audit.log_data_access(user_id="dr-ana", operation="read", data_type="patient_data", patient_id="p-1")

        assert audit.purge_old_logs(retention_years=7) == 1

        remaining = audit.query_audit_logs(AuditLogFilter(sort_order="ASC")).logs
        assert [log.operation for log in remaining] == ["read", PURGE_OPERATION]
        assert remaining[-1].user_id == SYSTEM_USER
        assert remaining[-1].new_values["purged"] == 1

    @pytest.mark.parametrize("backend", ["memory", "duckdb"])
    def test_purge_cutoff_boundary(self, backend, encryption_service):
        storage = InMemoryStorageAdapter() if backend == "memory" else DuckDBAdapter(db_path=":memory:")
        storage.initialize_schema()
        audit = AuditLogger(storage, encryption_service)
        now = utc_now().replace(microsecond=0)
        cutoff = add_years(now, -7)
        for label, stamp in (
            ("before", cutoff - timedelta(seconds=1)),
            ("at", cutoff),
            ("after", cutoff + timedelta(seconds=1)),
        ):
            storage.append_audit_entry(AuditLogEntry(
                user_id="dr-ana", operation="read", data_type="patient_data", patient_id="p-1",
                timestamp=stamp, justification=label,
            ))

        assert audit.purge_old_logs(retention_years=7, now=now) == 1

        remaining = audit.query_audit_logs(AuditLogFilter(sort_order="ASC")).logs
        assert [log.justification for log in remaining[:2]] == ["at", "after"]
        assert len(remaining) == 3
        assert remaining[-1].operation == PURGE_OPERATION
        assert remaining[-1].new_values == {"purged": 1, "cutoff": cutoff.isoformat()}
        storage.close()

    def test_recent_entries_survive(self, audit):
        audit.log_data_access(
            user_id="dr-ana", operation="read", data_type="patient_data", patient_id="p-1",
        )
        assert audit.purge_old_logs(retention_years=1) == 0

    def test_invalid_retention(self, audit):
        with pytest.raises(ValueError):
            audit.purge_old_logs(retention_years=0)

    def test_purge_recorded_even_when_nothing_deleted(self, audit):
        audit.purge_old_logs()
        logs = audit.query_audit_logs(AuditLogFilter(operation=PURGE_OPERATION)).logs
        assert len(logs) == 1
        assert logs[0].timestamp > utc_now() - timedelta(minutes=1)
