"""Tests for the health and integrity checks."""

from unittest.mock import Mock

from clinical_vault.domain.services import PatientRegistry
from clinical_vault.infrastructure.health import check_database_health, check_system_health

from tests.factories import make_registration


class TestHealth:

    def test_healthy(self, storage, audit, encryption_service, actor):
        PatientRegistry(storage, audit).register_patient(make_registration(), actor)

        report = check_system_health(storage, encryption_service, db_type="memory")

        assert report.status == "healthy"
        assert report.database.status == "connected"
        assert report.database.type == "memory"
        assert report.entity_counts["patients"] == 1
        assert report.entity_counts["patient_status_history"] == 1
        assert report.orphan_count == 0
        assert report.encryption["key_id"] == "test-v1"

    def test_degraded_with_orphans(self):
        storage = Mock()
        storage.count_entities.return_value = {"patients": 0, "medical_records": 1}
        storage.find_orphans.return_value = {"medical_records": ["r-1"], "patient_documents": []}

        report = check_system_health(storage)

        assert report.status == "degraded"
        assert report.orphans == {"medical_records": ["r-1"]}
        assert report.orphan_count == 1

    def test_unhealthy_when_storage_fails(self):
        storage = Mock()
        storage.count_entities.side_effect = RuntimeError("connection refused")

        database, counts = check_database_health(storage, "duckdb")
        assert database.status == "disconnected"
        assert counts == {}
        assert check_system_health(storage).status == "unhealthy"

    def test_orphan_scan_failure_degrades(self):
        storage = Mock()
        storage.count_entities.return_value = {"patients": 2}
        storage.find_orphans.side_effect = RuntimeError("scan failed")

        report = check_system_health(storage)
        assert report.status == "degraded"
        assert report.entity_counts == {"patients": 2}
