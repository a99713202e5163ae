"""Tests for ConfigManager and Settings."""

import json
import os

import pytest
from pydantic import ValidationError

from clinical_vault.infrastructure.config_manager import ConfigManager, DatabaseConfig, SecurityConfig
from clinical_vault.infrastructure.settings import Settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in list(os.environ):
        if key.startswith("CV_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestDatabaseConfig:

    def test_type_normalized(self):
        assert DatabaseConfig(db_type="DuckDB").db_type == "duckdb"

    def test_unsupported_type(self):
        with pytest.raises(ValidationError):
            DatabaseConfig(db_type="postgresql")

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValidationError):
            DatabaseConfig(db_path=str(tmp_path / "missing" / "vault.duckdb"))

    def test_connection_string(self, tmp_path):
        assert DatabaseConfig().get_connection_string() == ":memory:"
        db_file = str(tmp_path / "vault.duckdb")
        assert DatabaseConfig(db_path=db_file).get_connection_string() == db_file


class TestFromEnvironment:

    def test_defaults(self, clean_env):
        config = ConfigManager.from_environment()

        assert config.get_database_config().db_type == "duckdb"
        security = config.get_security_config()
        assert security.master_key is None
        assert security.suspicious_threshold == 10
        assert security.suspicious_window_minutes == 60
        assert security.confidential_roles == ["admin", "therapist", "doctor"]
        assert config.get_audit_config().retention_years == 7
        assert config.get_document_config().storage_path is None

    def test_environment_values(self, clean_env, tmp_path):
        clean_env.setenv("CV_DB_TYPE", "memory")
        clean_env.setenv("CV_MASTER_KEY", "super-secret-master-key")
        clean_env.setenv("CV_CONFIDENTIAL_ROLES", "Admin, psychologist")
        clean_env.setenv("CV_SUSPICIOUS_THRESHOLD", "3")
        clean_env.setenv("CV_MAX_FILE_SIZE", "1024")

        config = ConfigManager.from_environment()
        security = config.get_security_config()

        assert config.get_database_config().db_type == "memory"
        assert security.master_key.get_secret_value() == "super-secret-master-key"
        assert "super-secret-master-key" not in repr(security)
        assert security.confidential_roles == ["admin", "psychologist"]
        assert security.suspicious_threshold == 3
        assert config.get_document_config().max_file_size_bytes == 1024

    def test_dotenv_file(self, clean_env, tmp_path):
        env_file = tmp_path / "vault.env"
        env_file.write_text("CV_KEY_ID=from-dotenv\n")
        try:
            config = ConfigManager.from_environment(env_file=str(env_file))
            assert config.get_security_config().key_id == "from-dotenv"
        finally:
            os.environ.pop("CV_KEY_ID", None)

    def test_max_file_size_above_ceiling(self, clean_env):
        clean_env.setenv("CV_MAX_FILE_SIZE", str(200 * 1024 * 1024))
        with pytest.raises(ValidationError):
            ConfigManager.from_environment().get_document_config()

    def test_invalid_threshold(self, clean_env):
        clean_env.setenv("CV_SUSPICIOUS_THRESHOLD", "0")
        with pytest.raises(ValidationError):
            ConfigManager.from_environment().get_security_config()


class TestFromFile:

    def test_load(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({
            "database": {"db_type": "memory"},
            "security": {"key_id": "file-v1", "pbkdf2_iterations": 2000},
        }))
        config = ConfigManager.from_file(str(config_file))

        assert config.get_database_config().db_type == "memory"
        assert config.get_security_config().pbkdf2_iterations == 2000
        assert config.get("security.key_id") == "file-v1"
        assert config.get("security.missing", "fallback") == "fallback"
        assert config.get("database.db_type.nested", "fallback") == "fallback"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager.from_file(str(tmp_path / "absent.json"))

    def test_invalid_json(self, tmp_path):
        config_file = tmp_path / "config.json"
        config_file.write_text("{not json")
        with pytest.raises(ValueError, match="Invalid JSON"):
            ConfigManager.from_file(str(config_file))


class TestSettings:

    def test_sections_are_lazy(self):
        config = ConfigManager({"database": {"db_type": "memory"}})
        settings = Settings(config)
        assert settings.db_config.db_type == "memory"
        assert isinstance(settings.security_config, SecurityConfig)

    def test_db_path(self, tmp_path):
        db_file = str(tmp_path / "vault.duckdb")
        assert Settings(ConfigManager({"database": {"db_path": db_file}})).get_db_path() == db_file
        with pytest.raises(ValueError):
            Settings(ConfigManager({"database": {"db_type": "memory"}})).get_db_path()
