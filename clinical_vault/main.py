"""Application wiring for Clinical Vault.

Builds the storage adapter, blob store and encryption service from the
configuration manager and hands them to the ``ClinicalVault`` facade.

Security Impact:
    - The master key is read through the configuration layer only
    - Schema initialization failures stop start-up instead of running degraded

Architecture:
    - Follows Hexagonal Architecture principles
    - Storage adapter is selected via the configuration manager
"""

import logging
from typing import Optional

from clinical_vault.adapters.blob_store import FileSystemBlobStore, InMemoryBlobStore
from clinical_vault.adapters.storage import DuckDBAdapter, InMemoryStorageAdapter
from clinical_vault.adapters.virus_scanner import SignatureVirusScanner
from clinical_vault.domain.ports import BlobStorePort, StoragePort
from clinical_vault.facade import ClinicalVault
from clinical_vault.infrastructure.config_manager import ConfigManager, DatabaseConfig, DocumentConfig
from clinical_vault.infrastructure.encryption import EncryptionService, EnvironmentKeyProvider

logger = logging.getLogger(__name__)


def create_storage_adapter(db_config: Optional[DatabaseConfig] = None) -> StoragePort:
    """Create storage adapter based on configuration.

    Returns:
        StoragePort: Configured storage adapter instance

    Raises:
        ValueError: If database type is unsupported
    """
    db_config = db_config or ConfigManager.from_environment().get_database_config()

    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
        return DuckDBAdapter(db_config=db_config)
    elif db_config.db_type == "memory":
        logger.info("Initializing in-memory storage adapter")
        return InMemoryStorageAdapter()
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def create_blob_store(document_config: Optional[DocumentConfig] = None) -> BlobStorePort:
    """Filesystem blob store when a storage path is configured, memory otherwise."""
    if document_config is not None and document_config.storage_path:
        logger.info(f"Encrypted documents stored under: {document_config.storage_path}")
        return FileSystemBlobStore(document_config.storage_path)
    logger.warning("No document storage path configured; encrypted documents are kept in memory")
    return InMemoryBlobStore()


def create_application(config_manager: Optional[ConfigManager] = None) -> ClinicalVault:
    """Assemble a ready-to-use ``ClinicalVault``.

    Without ``CV_MASTER_KEY`` a random master key is generated for the life of
    the process and a warning is logged; files encrypted under it cannot be
    read after a restart.

    Raises:
        RuntimeError: If the storage schema cannot be initialized
        ValueError: If the configuration is invalid
    """
    config_manager = config_manager or ConfigManager.from_environment()
    db_config = config_manager.get_database_config()
    security_config = config_manager.get_security_config()
    document_config = config_manager.get_document_config()

    storage = create_storage_adapter(db_config)
    logger.info("Initializing storage schema...")
    schema_result = storage.initialize_schema()
    if not schema_result.is_success():
        logger.error(f"Failed to initialize schema: {schema_result.error}")
        raise RuntimeError(f"Schema initialization failed: {schema_result.error}")
    logger.info("Schema initialized successfully")

    encryption_service = EncryptionService(
        EnvironmentKeyProvider(security_config),
        iterations=security_config.pbkdf2_iterations,
    )

    return ClinicalVault(
        storage,
        encryption_service,
        blob_store=create_blob_store(document_config),
        virus_scanner=SignatureVirusScanner(),
        security_config=security_config,
        audit_config=config_manager.get_audit_config(),
        document_config=document_config,
        db_type=db_config.db_type,
    )
