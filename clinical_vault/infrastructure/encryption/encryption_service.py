"""Encryption service for clinical documents and audit payloads.

Security Impact:
    - Documents use AES-256-GCM with a fresh 12-byte IV per file and the
      document id as associated data, so ciphertext cannot be swapped between
      documents undetected
    - Per-patient document keys are derived with PBKDF2-HMAC-SHA256 from the
      master key using the patient id as salt; derived keys are never stored
    - Audit payloads are encrypted with Fernet under a key derived from the
      same master key

Architecture:
    - Infrastructure layer component
    - Used by the secure document store and the audit logger
    - Follows Hexagonal Architecture: isolated from domain core
"""

import base64
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from clinical_vault.domain.errors import EncryptionError
from clinical_vault.domain.ports import KeyProviderPort

logger = logging.getLogger(__name__)

FILE_ALGORITHM = "AES-256-GCM"
IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32
DEFAULT_ITERATIONS = 100_000

_AUDIT_KEY_SALT = b"clinical-vault-audit-payload"


@dataclass(frozen=True)
class EncryptedFile:
    """Ciphertext plus the parameters needed to decrypt it."""
    ciphertext: bytes
    iv: str
    auth_tag: str
    algorithm: str
    key_id: str


class EncryptionService:
    """Service for encrypting documents and audit payloads.

    Example Usage:
        ```python
        service = EncryptionService(StaticKeyProvider(key), iterations=100_000)
        encrypted = service.encrypt_file(data, patient_id, document_id)
        plaintext = service.decrypt_file(
            encrypted.ciphertext, encrypted.iv, encrypted.auth_tag, patient_id, document_id
        )
        token = service.encrypt_record({"status": "active"})
        ```
    """

    def __init__(self, key_provider: KeyProviderPort, iterations: int = DEFAULT_ITERATIONS):
        self._key_provider = key_provider
        self.iterations = iterations
        self.key_id = key_provider.key_id
        self.cipher = Fernet(self._derive_fernet_key(key_provider.get_master_key()))
        logger.debug(f"EncryptionService initialized with key_id: {self.key_id}")

    def _derive_fernet_key(self, master_key: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=_AUDIT_KEY_SALT,
            iterations=self.iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(master_key))

    def derive_patient_key(self, patient_id: str) -> bytes:
        """32-byte AES key for one patient's documents."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=str(patient_id).encode("utf-8"),
            iterations=self.iterations,
        )
        return kdf.derive(self._key_provider.get_master_key())

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------

    def encrypt_file(self, data: bytes, patient_id: str, document_id: str) -> EncryptedFile:
        try:
            iv = os.urandom(IV_LENGTH)
            aesgcm = AESGCM(self.derive_patient_key(patient_id))
            sealed = aesgcm.encrypt(iv, data, str(document_id).encode("utf-8"))
        except Exception as e:
            logger.error(f"Failed to encrypt document {document_id}: {type(e).__name__}")
            raise EncryptionError(f"Failed to encrypt document: {str(e)}", operation="encrypt_file") from e
        return EncryptedFile(
            ciphertext=sealed[:-TAG_LENGTH],
            iv=iv.hex(),
            auth_tag=sealed[-TAG_LENGTH:].hex(),
            algorithm=FILE_ALGORITHM,
            key_id=self.key_id,
        )

    def decrypt_file(
        self,
        ciphertext: bytes,
        iv: str,
        auth_tag: str,
        patient_id: str,
        document_id: str
    ) -> bytes:
        """Decrypt and authenticate one stored file.

        Raises:
            EncryptionError: If authentication fails or parameters are malformed
        """
        try:
            aesgcm = AESGCM(self.derive_patient_key(patient_id))
            return aesgcm.decrypt(
                bytes.fromhex(iv),
                ciphertext + bytes.fromhex(auth_tag),
                str(document_id).encode("utf-8"),
            )
        except InvalidTag as e:
            logger.error(f"Authentication failed while decrypting document {document_id}")
            raise EncryptionError(
                "Document authentication failed", operation="decrypt_file",
                details={"document_id": str(document_id)},
            ) from e
        except ValueError as e:
            raise EncryptionError(
                f"Invalid encryption parameters: {str(e)}", operation="decrypt_file",
                details={"document_id": str(document_id)},
            ) from e

    # ------------------------------------------------------------------
    # audit payloads
    # ------------------------------------------------------------------

    def encrypt_record(self, record: Any) -> str:
        """Encrypt a JSON-compatible value into a Fernet token."""
        try:
            json_str = json.dumps(record, default=str, sort_keys=True)
            return self.cipher.encrypt(json_str.encode('utf-8')).decode('ascii')
        except Exception as e:
            logger.error(f"Failed to encrypt record: {type(e).__name__}")
            raise EncryptionError(f"Failed to encrypt record: {str(e)}", operation="encrypt_record") from e

    def decrypt_record(self, token: str) -> Any:
        try:
            json_str = self.cipher.decrypt(token.encode('ascii')).decode('utf-8')
            return json.loads(json_str)
        except (InvalidToken, ValueError) as e:
            logger.error("Failed to decrypt record")
            raise EncryptionError("Failed to decrypt record", operation="decrypt_record") from e

    @staticmethod
    def checksum(data: bytes) -> str:
        """SHA-256 hex digest of raw bytes."""
        return hashlib.sha256(data).hexdigest()

    @staticmethod
    def hash_value(value: Any) -> Optional[str]:
        """SHA-256 of a value (for verification without decryption)."""
        if value is None:
            return None

        value_str = str(value) if not isinstance(value, (dict, list)) else json.dumps(value, default=str, sort_keys=True)
        return hashlib.sha256(value_str.encode('utf-8')).hexdigest()

    def get_key_id(self) -> str:
        return self.key_id

    def describe(self) -> Dict[str, Any]:
        return {"algorithm": FILE_ALGORITHM, "key_id": self.key_id, "iterations": self.iterations}
