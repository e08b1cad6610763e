"""Chunk manifest: the ordered per-chunk metadata needed to reassemble a file.

Two JSON wire formats are understood:

- legacy: a bare array of base64 IV strings in chunk order. Chunk lengths are
  implicit (every chunk but the last is ``CHUNK_SIZE + TAG_SIZE``).
- version 2: ``{"version": 2, "chunk_size": ..., "chunks": [{"iv", "length"}]}``
  with the ciphertext length of every chunk stated explicitly.

New manifests are always written as version 2.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from chunkvault.core.exceptions import MalformedManifestError
from .codec import IV_SIZE, TAG_SIZE

CHUNK_SIZE = 1024 * 1024  # 1 MiB
MANIFEST_VERSION = 2


def _decode_iv(encoded: str, index: int) -> bytes:
    try:
        iv = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise MalformedManifestError(f"IV for chunk {index} is not valid base64") from exc
    if len(iv) != IV_SIZE:
        raise MalformedManifestError(
            f"IV for chunk {index} must be {IV_SIZE} bytes, got {len(iv)}"
        )
    return iv


@dataclass(frozen=True)
class ManifestEntry:
    iv: bytes
    length: Optional[int] = None

    @property
    def iv_b64(self) -> str:
        return base64.b64encode(self.iv).decode("ascii")


@dataclass
class ChunkManifest:
    """Ordered IVs (and ciphertext lengths) of one encrypted file."""

    entries: List[ManifestEntry] = field(default_factory=list)
    chunk_size: int = CHUNK_SIZE

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> ManifestEntry:
        return self.entries[index]

    @property
    def chunk_count(self) -> int:
        return len(self.entries)

    @property
    def has_lengths(self) -> bool:
        """True when every entry carries an explicit ciphertext length."""
        return bool(self.entries) and all(e.length is not None for e in self.entries)

    @property
    def ciphertext_size(self) -> Optional[int]:
        if not self.has_lengths:
            return None
        return sum(e.length for e in self.entries)

    @property
    def plaintext_size(self) -> Optional[int]:
        size = self.ciphertext_size
        if size is None:
            return None
        return size - TAG_SIZE * len(self.entries)

    def append(self, iv: bytes, length: Optional[int] = None) -> None:
        if len(iv) != IV_SIZE:
            raise MalformedManifestError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
        self.entries.append(ManifestEntry(iv=bytes(iv), length=length))

    def ivs_b64(self) -> List[str]:
        """Legacy wire form: base64 IVs in chunk order."""
        return [e.iv_b64 for e in self.entries]

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": MANIFEST_VERSION,
            "chunk_size": self.chunk_size,
            "chunks": [
                {"iv": e.iv_b64, "length": e.length} for e in self.entries
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_ivs(cls, ivs: List[str]) -> "ChunkManifest":
        """Build a manifest from the legacy base64 IV list (no lengths)."""
        if not isinstance(ivs, list):
            raise MalformedManifestError("IV manifest must be a list")
        return cls(entries=[ManifestEntry(iv=_decode_iv(s, i)) for i, s in enumerate(ivs)])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkManifest":
        if not isinstance(data, dict):
            raise MalformedManifestError("Manifest must be a JSON object")
        if data.get("version") != MANIFEST_VERSION:
            raise MalformedManifestError(f"Unsupported manifest version {data.get('version')!r}")
        chunk_size = data.get("chunk_size", CHUNK_SIZE)
        if chunk_size != CHUNK_SIZE:
            raise MalformedManifestError(
                f"Manifest chunk size {chunk_size} does not match {CHUNK_SIZE}"
            )
        chunks = data.get("chunks")
        if not isinstance(chunks, list):
            raise MalformedManifestError("Manifest 'chunks' must be a list")

        entries = []
        for i, item in enumerate(chunks):
            if not isinstance(item, dict) or "iv" not in item:
                raise MalformedManifestError(f"Manifest entry {i} is missing its IV")
            length = item.get("length")
            if length is not None and (
                isinstance(length, bool) or not isinstance(length, int) or length < TAG_SIZE
            ):
                raise MalformedManifestError(f"Manifest entry {i} has invalid length {length!r}")
            entries.append(ManifestEntry(iv=_decode_iv(item["iv"], i), length=length))
        return cls(entries=entries, chunk_size=chunk_size)

    @classmethod
    def from_json(cls, text: str | bytes) -> "ChunkManifest":
        """Parse either wire format."""
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise MalformedManifestError("Manifest is not valid JSON") from exc
        if isinstance(data, list):
            return cls.from_ivs(data)
        return cls.from_dict(data)
