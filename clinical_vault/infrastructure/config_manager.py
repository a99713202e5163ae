"""Configuration Manager for Secure Credential Handling.

This module loads the storage, security, audit and document settings of the
clinical vault from environment variables or a JSON file and validates them
with Pydantic before use.

Security Impact:
    - The master encryption key is held as SecretStr and never logged
    - Configuration files with permissive modes trigger a warning
    - Invalid configuration fails fast at startup

Architecture:
    - Infrastructure layer, isolated from the domain core
    - Type-safe configuration using Pydantic models
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, SecretStr, field_validator

from clinical_vault.domain.document import ALLOWED_MIME_TYPES, MAX_FILE_SIZE

logger = logging.getLogger(__name__)

ENV_PREFIX = "CV_"
DEFAULT_CONFIDENTIAL_ROLES = ["admin", "therapist", "doctor"]


class DatabaseConfig(BaseModel):
    """Storage backend configuration.

    Parameters:
        db_type: ``duckdb`` or ``memory``
        db_path: Path to the DuckDB file (``:memory:`` for an in-process database)
    """

    db_type: str = Field(default="duckdb", description="Storage backend (duckdb, memory)")
    db_path: Optional[str] = Field(None, description="Path to database file (for DuckDB)")

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        supported_types = ["duckdb", "memory"]
        if v.lower() not in supported_types:
            raise ValueError(f"Unsupported database type: {v}. Supported: {supported_types}")
        return v.lower()

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: Optional[str]) -> Optional[str]:
        """Validate database directory exists (the file may not exist yet)."""
        if v is None or v == ":memory:":
            return v
        db_path_obj = Path(v)
        if not db_path_obj.parent.exists():
            raise ValueError(f"Database directory does not exist: {db_path_obj.parent}")
        return str(db_path_obj)

    def get_connection_string(self) -> str:
        return self.db_path or ":memory:"


class SecurityConfig(BaseModel):
    """Encryption and access-control settings.

    Security Impact:
        - ``master_key`` is a SecretStr; ``repr`` and logs show ``**********``
        - Suspicious-activity tunables live here, not in code
    """

    master_key: Optional[SecretStr] = Field(None, description="Master key for document and audit encryption")
    key_id: str = Field(default="master-v1", description="Identifier of the active master key")
    pbkdf2_iterations: int = Field(default=100_000, ge=1, description="PBKDF2 iterations for per-patient keys")
    confidential_roles: list[str] = Field(default_factory=lambda: list(DEFAULT_CONFIDENTIAL_ROLES))
    suspicious_threshold: int = Field(default=10, ge=1)
    suspicious_window_minutes: int = Field(default=60, ge=1)

    @field_validator("confidential_roles", mode="before")
    @classmethod
    def split_roles(cls, v):
        if isinstance(v, str):
            return [role.strip().lower() for role in v.split(",") if role.strip()]
        return v


class AuditConfig(BaseModel):
    retention_years: int = Field(default=7, ge=1, le=100)
    alert_logger_name: str = Field(default="clinical_vault.audit.alerts")


class DocumentConfig(BaseModel):
    """Secure document store settings.

    ``storage_path`` selects a filesystem blob store; without it documents are
    kept in memory.
    """

    storage_path: Optional[str] = None
    max_file_size_bytes: int = Field(default=MAX_FILE_SIZE, ge=1, le=MAX_FILE_SIZE)
    allowed_mime_types: list[str] = Field(default_factory=lambda: sorted(ALLOWED_MIME_TYPES))


class ConfigManager:
    """Secure configuration manager for the clinical vault.

    Example Usage:
        ```python
        # Load from environment variables (.env supported)
        config = ConfigManager.from_environment()
        db_config = config.get_database_config()

        # Load from file
        config = ConfigManager.from_file("config.json")
        security = config.get_security_config()
        ```
    """

    def __init__(self, config_data: Dict[str, Any]):
        self._config_data = config_data
        self._database_config: Optional[DatabaseConfig] = None
        self._security_config: Optional[SecurityConfig] = None
        self._audit_config: Optional[AuditConfig] = None
        self._document_config: Optional[DocumentConfig] = None

    @classmethod
    def from_environment(cls, env_file: Optional[str] = None) -> 'ConfigManager':
        """Load configuration from environment variables.

        Environment Variables:
            - CV_DB_TYPE: Storage backend (duckdb, memory)
            - CV_DB_PATH: Path to DuckDB file
            - CV_MASTER_KEY: Master encryption key (secret)
            - CV_KEY_ID: Identifier of the master key
            - CV_PBKDF2_ITERATIONS: Key-derivation iterations
            - CV_CONFIDENTIAL_ROLES: Comma-separated roles allowed on confidential documents
            - CV_SUSPICIOUS_THRESHOLD: Denied accesses that raise a security alert
            - CV_SUSPICIOUS_WINDOW_MINUTES: Look-back window for denied accesses
            - CV_AUDIT_RETENTION_YEARS: Audit retention used by purge
            - CV_DOCUMENT_STORAGE_PATH: Directory for encrypted blobs
            - CV_MAX_FILE_SIZE: Maximum upload size in bytes

        Security Impact:
            - Credentials are read from environment (never logged)
            - A .env file in the working directory (or ``env_file``) is loaded
              without overriding variables already set
        """
        env_path = Path(env_file) if env_file else Path.cwd() / ".env"
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment variables from {env_path}")

        def env(name: str, default: Optional[str] = None) -> Optional[str]:
            return os.getenv(f"{ENV_PREFIX}{name}", default)

        config_data: Dict[str, Any] = {
            "database": {
                "db_type": env("DB_TYPE", "duckdb"),
                "db_path": env("DB_PATH"),
            },
            "security": {
                "master_key": env("MASTER_KEY"),
                "key_id": env("KEY_ID", "master-v1"),
                "pbkdf2_iterations": env("PBKDF2_ITERATIONS", "100000"),
                "confidential_roles": env("CONFIDENTIAL_ROLES", ",".join(DEFAULT_CONFIDENTIAL_ROLES)),
                "suspicious_threshold": env("SUSPICIOUS_THRESHOLD", "10"),
                "suspicious_window_minutes": env("SUSPICIOUS_WINDOW_MINUTES", "60"),
            },
            "audit": {
                "retention_years": env("AUDIT_RETENTION_YEARS", "7"),
            },
            "documents": {
                "storage_path": env("DOCUMENT_STORAGE_PATH"),
                "max_file_size_bytes": env("MAX_FILE_SIZE", str(MAX_FILE_SIZE)),
            },
        }
        return cls(config_data)

    @classmethod
    def from_file(cls, config_path: str) -> 'ConfigManager':
        """Load configuration from a JSON file.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        stat_info = config_file.stat()
        if stat_info.st_mode & 0o077 != 0:
            logger.warning(
                f"Configuration file has overly permissive permissions: {config_path}. "
                "Consider setting to 600 for credential files."
            )

        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in configuration file: {str(e)}")

        return cls(config_data)

    def get_database_config(self) -> DatabaseConfig:
        if self._database_config is None:
            self._database_config = DatabaseConfig(**self._config_data.get("database", {}))
        return self._database_config

    def get_security_config(self) -> SecurityConfig:
        """Get security configuration.

        Security Impact:
            - The master key is wrapped in SecretStr before validation
        """
        if self._security_config is None:
            data = dict(self._config_data.get("security", {}))
            if data.get("master_key"):
                data["master_key"] = SecretStr(str(data["master_key"]))
            else:
                data.pop("master_key", None)
            self._security_config = SecurityConfig(**data)
        return self._security_config

    def get_audit_config(self) -> AuditConfig:
        if self._audit_config is None:
            self._audit_config = AuditConfig(**self._config_data.get("audit", {}))
        return self._audit_config

    def get_document_config(self) -> DocumentConfig:
        if self._document_config is None:
            data = {k: v for k, v in self._config_data.get("documents", {}).items() if v is not None}
            self._document_config = DocumentConfig(**data)
        return self._document_config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key (dot notation, e.g. "database.db_path")."""
        keys = key.split(".")
        value = self._config_data

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default


def get_database_config() -> DatabaseConfig:
    """Database configuration from the environment."""
    return ConfigManager.from_environment().get_database_config()
