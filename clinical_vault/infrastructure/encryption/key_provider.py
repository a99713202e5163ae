"""Master key providers.

Security Impact:
    - The master key never leaves the provider except to derive working keys
    - Without a configured key a random one is generated; data encrypted with
      it cannot be read after a restart (development only)
"""

import base64
import logging
import os
from typing import Optional, Union

from clinical_vault.domain.ports import KeyProviderPort
from clinical_vault.infrastructure.config_manager import SecurityConfig

logger = logging.getLogger(__name__)


def _as_key_bytes(key: Union[str, bytes]) -> bytes:
    """Accept raw bytes, base64 text or a plain passphrase."""
    if isinstance(key, bytes):
        return key
    try:
        decoded = base64.urlsafe_b64decode(key.encode("utf-8"))
        if len(decoded) >= 32:
            return decoded
    except ValueError:
        pass
    return key.encode("utf-8")


class StaticKeyProvider(KeyProviderPort):
    """Key provider holding a fixed key (tests, embedding)."""

    def __init__(self, master_key: Union[str, bytes], key_id: str = "static"):
        if not master_key:
            raise ValueError("Master key cannot be empty")
        self._key = _as_key_bytes(master_key)
        self._key_id = key_id

    def get_master_key(self) -> bytes:
        return self._key

    @property
    def key_id(self) -> str:
        return self._key_id


class EnvironmentKeyProvider(KeyProviderPort):
    """Key provider backed by ``CV_MASTER_KEY`` (via SecurityConfig)."""

    def __init__(self, security_config: Optional[SecurityConfig] = None):
        config = security_config or SecurityConfig()
        if config.master_key is not None:
            self._key = _as_key_bytes(config.master_key.get_secret_value())
        else:
            logger.warning(
                "No CV_MASTER_KEY found. Using generated key (NOT SECURE for production!). "
                "Set CV_MASTER_KEY environment variable."
            )
            self._key = os.urandom(32)
        self._key_id = config.key_id

    def get_master_key(self) -> bytes:
        return self._key

    @property
    def key_id(self) -> str:
        return self._key_id
