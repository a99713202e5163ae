"""Document and audit payload encryption."""

from clinical_vault.infrastructure.encryption.encryption_service import EncryptedFile, EncryptionService
from clinical_vault.infrastructure.encryption.key_provider import EnvironmentKeyProvider, StaticKeyProvider

__all__ = ["EncryptedFile", "EncryptionService", "EnvironmentKeyProvider", "StaticKeyProvider"]
