"""Encrypted document storage."""

from clinical_vault.infrastructure.documents.secure_document_store import (
    DocumentStatistics,
    SecureDocumentStore,
)

__all__ = ["DocumentStatistics", "SecureDocumentStore"]
