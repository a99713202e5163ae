"""Tests for the blob stores, tenant directory and signature scanner."""

import pytest

from clinical_vault.adapters.blob_store import FileSystemBlobStore, InMemoryBlobStore
from clinical_vault.adapters.directory import InMemoryTenantDirectory
from clinical_vault.adapters.virus_scanner import EICAR_SIGNATURE, SignatureVirusScanner
from clinical_vault.domain.enums import VirusScanResult


@pytest.fixture(params=["memory", "filesystem"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryBlobStore()
    return FileSystemBlobStore(str(tmp_path / "blobs"))


class TestBlobStores:

    def test_put_get(self, store):
        store.put("p/d/v1_1.pdf", b"ciphertext")
        assert store.exists("p/d/v1_1.pdf")
        assert store.get("p/d/v1_1.pdf") == b"ciphertext"

    def test_overwrite(self, store):
        store.put("p/d/v1_1.pdf", b"one")
        store.put("p/d/v1_1.pdf", b"two")
        assert store.get("p/d/v1_1.pdf") == b"two"

    def test_delete_is_idempotent(self, store):
        store.put("p/d/v1_1.pdf", b"x")
        assert store.delete("p/d/v1_1.pdf")
        assert not store.delete("p/d/v1_1.pdf")
        assert not store.exists("p/d/v1_1.pdf")

    def test_missing_blob(self, store):
        with pytest.raises(KeyError):
            store.get("p/d/none.pdf")

    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.pdf", "p/../../x", "", "p//d"])
    def test_rejects_unsafe_paths(self, store, path):
        with pytest.raises(ValueError):
            store.put(path, b"x")


class TestFileSystemBlobStore:

    def test_files_written_below_root(self, tmp_path):
        store = FileSystemBlobStore(str(tmp_path))
        store.put("p/d/v1_1.pdf", b"data")
        assert (tmp_path / "p" / "d" / "v1_1.pdf").read_bytes() == b"data"
        assert not (tmp_path / "p" / "d" / "v1_1.pdf.tmp").exists()

    def test_exists_with_unsafe_path(self, tmp_path):
        assert not FileSystemBlobStore(str(tmp_path)).exists("../x")


class TestInMemoryTenantDirectory:

    def test_shared_tenant(self):
        directory = InMemoryTenantDirectory()
        directory.assign_user("u1", "clinic-1", " Doctor ")
        directory.assign_patient("p1", "clinic-1")

        assert directory.shares_tenant("u1", "p1")
        assert directory.get_role("u1") == "doctor"
        assert directory.get_tenant_for_patient("p1") == "clinic-1"

    def test_unknown_entities(self):
        directory = InMemoryTenantDirectory()
        directory.assign_user("u1", "clinic-1", "doctor")
        assert not directory.shares_tenant("u1", "p-unknown")
        assert not directory.shares_tenant("u-unknown", "p-unknown")
        assert directory.get_role("u-unknown") is None


class TestSignatureVirusScanner:

    def test_clean(self):
        assert SignatureVirusScanner().scan(b"%PDF-1.4 harmless") == VirusScanResult.CLEAN

    def test_eicar(self):
        assert SignatureVirusScanner().scan(b"prefix " + EICAR_SIGNATURE) == VirusScanResult.INFECTED

    def test_custom_signatures(self):
        scanner = SignatureVirusScanner([b"BAD"])
        assert scanner.scan(b"...BAD...") == VirusScanResult.INFECTED
        assert scanner.scan(EICAR_SIGNATURE) == VirusScanResult.CLEAN
