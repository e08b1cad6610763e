"""
Local content-addressed store for encrypted blobs

Structure Map for reference:
==============================
 - <storage_root>/
      - blobs/
          - {sha256}            (concatenated ciphertext chunks)
      - manifests/
          - {sha256}.json       (chunk manifest, version 2)
==============================
For reference:
> Blobs are addressed by the SHA-256 of the ciphertext, so storing the same
  upload twice is idempotent.
> The store never sees plaintext or key material. Key custody lives under
  security/ (keystore, sealed key files, recipient wrapping).
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

from .exceptions import BlobNotFoundError, StorageError
from .hashing import calculate_sha256
from ..security.manifest import ChunkManifest

logger = logging.getLogger(__name__)


class BlobStore:
    """Filesystem stand-in for the remote content store"""

    def __init__(self, root_path: Optional[str] = None):
        self.root = (
            Path(root_path).expanduser() if root_path else Path.home() / ".chunkvault"
        )
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def blob_root(self) -> Path:
        return self.root / "blobs"

    @property
    def manifest_root(self) -> Path:
        return self.root / "manifests"

    def blob_path(self, hash_hex: str) -> Path:
        return self.blob_root / hash_hex

    def manifest_path(self, hash_hex: str) -> Path:
        return self.manifest_root / f"{hash_hex}.json"

    def put_blob(self, source_path: str) -> Dict[str, Any]:
        src = Path(source_path).expanduser()
        if not src.exists():
            raise StorageError(f"Ciphertext blob {src} does not exist")
        self.blob_root.mkdir(parents=True, exist_ok=True)
        hash_hex = calculate_sha256(src)
        destination = self.blob_path(hash_hex)
        if not destination.exists():
            shutil.copy2(src, destination)
        else:
            logger.debug("Blob %s already stored", hash_hex)
        size = destination.stat().st_size
        return {"hash": hash_hex, "size": size, "path": str(destination)}

    def get_blob(self, hash_hex: str, destination_path: str) -> str:
        src = self.blob_path(hash_hex)
        if not src.exists():
            raise BlobNotFoundError(f"Blob {hash_hex} not found")
        destination = Path(destination_path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, destination)
        return str(destination)

    def has(self, hash_hex: str) -> bool:
        return self.blob_path(hash_hex).exists()

    def verify(self, hash_hex: str) -> bool:
        path = self.blob_path(hash_hex)
        if not path.exists():
            return False
        return calculate_sha256(path) == hash_hex

    def save_manifest(self, hash_hex: str, manifest: ChunkManifest) -> Path:
        if not self.has(hash_hex):
            raise BlobNotFoundError(f"Blob {hash_hex} not found; store it before its manifest")
        self.manifest_root.mkdir(parents=True, exist_ok=True)
        p = self.manifest_path(hash_hex)
        with open(p, "w", encoding="utf-8") as f:
            json.dump(manifest.to_dict(), f)
        return p

    def load_manifest(self, hash_hex: str) -> ChunkManifest:
        p = self.manifest_path(hash_hex)
        if not p.exists():
            raise BlobNotFoundError(f"No manifest stored for blob {hash_hex}")
        with open(p, "r", encoding="utf-8") as f:
            return ChunkManifest.from_json(f.read())

    def delete(self, hash_hex: str) -> bool:
        removed = False
        for p in (self.blob_path(hash_hex), self.manifest_path(hash_hex)):
            if p.exists():
                p.unlink()
                removed = True
        return removed
