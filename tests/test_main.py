"""Tests for the application composition root."""

import logging

from clinical_vault.infrastructure.config_manager import ConfigManager
from clinical_vault.main import create_application

from tests.factories import PDF_BYTES, make_registration, make_upload, new_user_id, pdf_file


def memory_config(**security):
    return ConfigManager({
        "database": {"db_type": "memory"},
        "security": {"pbkdf2_iterations": 1000, **security},
    })


class TestCreateApplication:

    def test_missing_master_key_generates_one(self, caplog):
        with caplog.at_level(logging.WARNING):
            vault = create_application(memory_config())

        assert "No CV_MASTER_KEY found" in caplog.text
        actor = new_user_id()
        patient = vault.register_patient(make_registration(), actor)
        document = vault.upload_document(patient.id, pdf_file(), make_upload(), actor)
        assert vault.retrieve_file(document.file_path) == PDF_BYTES
        vault.close()

    def test_configured_master_key(self, caplog):
        with caplog.at_level(logging.WARNING):
            vault = create_application(memory_config(master_key="configured-master-key"))

        assert "No CV_MASTER_KEY found" not in caplog.text
        assert vault.check_health().status == "healthy"
        vault.close()
