"""Unit tests for the local BlobStore."""

import hashlib
import pytest

from chunkvault.core.exceptions import BlobNotFoundError, StorageError
from chunkvault.core.storage import BlobStore
from chunkvault.security.assembler import encrypt_file


@pytest.fixture
def store(tmp_path):
    """Return a BlobStore rooted in tmp_path."""
    return BlobStore(str(tmp_path / "store"))


@pytest.fixture
def encrypted(tmp_path):
    """Encrypt a small file and return (blob_path, manifest)."""
    src = tmp_path / "plain.txt"
    src.write_bytes(b"content" * 100)
    blob = tmp_path / "plain.txt.cvx"
    manifest, _ = encrypt_file(src, blob)
    return blob, manifest


def test_put_blob_is_content_addressed(store, encrypted):
    blob, _ = encrypted
    info = store.put_blob(str(blob))

    assert info["hash"] == hashlib.sha256(blob.read_bytes()).hexdigest()
    assert info["size"] == blob.stat().st_size
    assert store.has(info["hash"])
    assert store.verify(info["hash"]) is True


def test_put_blob_is_idempotent(store, encrypted):
    blob, _ = encrypted
    first = store.put_blob(str(blob))
    second = store.put_blob(str(blob))
    assert first == second


def test_put_missing_blob(store, tmp_path):
    with pytest.raises(StorageError):
        store.put_blob(str(tmp_path / "nope"))


def test_verify_detects_corruption(store, encrypted):
    blob, _ = encrypted
    info = store.put_blob(str(blob))
    stored = store.blob_path(info["hash"])
    data = bytearray(stored.read_bytes())
    data[0] ^= 0x01
    stored.write_bytes(bytes(data))

    assert store.verify(info["hash"]) is False


def test_verify_missing_returns_false(store):
    assert store.verify("0" * 64) is False


def test_get_blob(store, encrypted, tmp_path):
    blob, _ = encrypted
    info = store.put_blob(str(blob))
    dest = tmp_path / "out" / "copy.cvx"

    assert store.get_blob(info["hash"], str(dest)) == str(dest)
    assert dest.read_bytes() == blob.read_bytes()


def test_get_missing_blob(store, tmp_path):
    with pytest.raises(BlobNotFoundError):
        store.get_blob("0" * 64, str(tmp_path / "x"))


def test_manifest_roundtrip(store, encrypted):
    blob, manifest = encrypted
    info = store.put_blob(str(blob))
    store.save_manifest(info["hash"], manifest)

    assert store.load_manifest(info["hash"]) == manifest


def test_manifest_requires_blob(store, encrypted):
    _, manifest = encrypted
    with pytest.raises(BlobNotFoundError):
        store.save_manifest("0" * 64, manifest)


def test_load_missing_manifest(store):
    with pytest.raises(BlobNotFoundError):
        store.load_manifest("0" * 64)


def test_delete(store, encrypted):
    blob, manifest = encrypted
    info = store.put_blob(str(blob))
    store.save_manifest(info["hash"], manifest)

    assert store.delete(info["hash"]) is True
    assert not store.has(info["hash"])
    assert not store.manifest_path(info["hash"]).exists()
    assert store.delete(info["hash"]) is False
