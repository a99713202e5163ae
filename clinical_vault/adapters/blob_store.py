"""Blob store adapters for encrypted document content.

Blobs are opaque ciphertext addressed by ``{patient}/{document}/v{n}_...``
paths. The store never sees plaintext or keys.

Security Impact:
    - Paths are validated so a blob can never be written outside the root
      directory
    - Deleting a missing blob is not an error (deletion is idempotent)
"""

import logging
import os
from pathlib import Path
from threading import RLock

from clinical_vault.domain.ports import BlobStorePort

logger = logging.getLogger(__name__)


def _check_relative(path: str) -> str:
    if not path or path.startswith("/") or "\\" in path:
        raise ValueError(f"Invalid blob path: {path!r}")
    if any(part in ("", ".", "..") for part in path.split("/")):
        raise ValueError(f"Invalid blob path: {path!r}")
    return path


class InMemoryBlobStore(BlobStorePort):
    """Blob store kept in process memory (tests, development)."""

    def __init__(self):
        self._blobs: dict[str, bytes] = {}
        self._lock = RLock()

    def put(self, path: str, data: bytes) -> None:
        with self._lock:
            self._blobs[_check_relative(path)] = bytes(data)

    def get(self, path: str) -> bytes:
        with self._lock:
            return self._blobs[path]

    def delete(self, path: str) -> bool:
        with self._lock:
            return self._blobs.pop(path, None) is not None

    def exists(self, path: str) -> bool:
        with self._lock:
            return path in self._blobs

    def __len__(self) -> int:
        return len(self._blobs)


class FileSystemBlobStore(BlobStorePort):
    """Blob store writing one file per blob below ``root``.

    Example Usage:
        ```python
        store = FileSystemBlobStore("/var/lib/clinical-vault/documents")
        store.put("p-1/d-1/v1_1700000000000.pdf", ciphertext)
        ```
    """

    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.root / _check_relative(path)).resolve()
        if self.root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path!r}")
        return target

    def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, target)
        logger.debug(f"Stored blob {path} ({len(data)} bytes)")

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise KeyError(path)
        return target.read_bytes()

    def delete(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.is_file():
            return False
        target.unlink()
        return True

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except ValueError:
            return False
