"""Application Settings and Configuration.

This module provides application-wide settings that combine configuration
from the configuration manager with application-specific defaults.

Security Impact:
    - Settings are loaded from secure configuration sources
    - Sensitive values are never logged
    - Defaults are provided for development convenience
"""

import os
from typing import Optional

from clinical_vault.infrastructure.config_manager import (
    AuditConfig,
    ConfigManager,
    DatabaseConfig,
    DocumentConfig,
    SecurityConfig,
)

# Application metadata
APP_NAME = "Clinical-Vault"
APP_VERSION = "1.0.0"


class Settings:
    """Application settings loaded from configuration manager and environment.

    Configuration sections are loaded lazily on first access, so importing
    this module never touches the environment's secrets.
    """

    def __init__(self, config_manager: Optional[ConfigManager] = None):
        self._config_manager = config_manager

        self.app_name = os.getenv("CV_APP_NAME", APP_NAME)
        self.app_version = APP_VERSION
        self.log_level = os.getenv("CV_LOG_LEVEL", "INFO")
        self.log_json = os.getenv("CV_LOG_JSON", "false").lower() == "true"

    @property
    def config_manager(self) -> ConfigManager:
        if self._config_manager is None:
            self._config_manager = ConfigManager.from_environment()
        return self._config_manager

    @property
    def db_config(self) -> DatabaseConfig:
        return self.config_manager.get_database_config()

    @property
    def security_config(self) -> SecurityConfig:
        return self.config_manager.get_security_config()

    @property
    def audit_config(self) -> AuditConfig:
        return self.config_manager.get_audit_config()

    @property
    def document_config(self) -> DocumentConfig:
        return self.config_manager.get_document_config()

    def get_db_path(self) -> str:
        """Database path for DuckDB (``:memory:`` when unset)."""
        if self.db_config.db_type == "duckdb":
            return self.db_config.db_path or ":memory:"
        raise ValueError(f"Database type '{self.db_config.db_type}' does not use db_path")


# Global settings instance
settings = Settings()
