"""Chunked file encryption: the upload and download loops.

Upload splits the source into ``CHUNK_SIZE`` plaintext chunks, derives a key
per chunk from a fresh master key and encrypts each chunk on its own. The
caller concatenates the ciphertexts into one blob and keeps the manifest and
key material alongside it.

Download walks the manifest in order, works out where each chunk lives in the
concatenated blob, re-derives the chunk key and decrypts. Chunk offsets are
computed sequentially, so chunks are always processed in index order.

Offset invariant: every chunk except the last holds exactly ``CHUNK_SIZE``
plaintext bytes. Version 2 manifests also record each ciphertext length, so
decoding them does not depend on that invariant; legacy IV-only manifests do.

The loops are generators (:func:`iter_encrypt`, :func:`iter_decrypt`) so
callers can stream chunks without holding the whole file. :func:`encrypt_stream`
and :func:`reconstruct` wrap them with progress callbacks for in-memory use;
:func:`encrypt_file` and :func:`decrypt_file` stream to and from disk.
"""
from __future__ import annotations

import base64
import io
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Tuple, Union

from chunkvault.core.exceptions import (
    AuthenticationError,
    DecryptionFailedError,
    MalformedInputError,
    MalformedManifestError,
    OperationCancelledError,
)
from .codec import TAG_SIZE, decrypt_chunk, encrypt_chunk
from .keys import MasterKey, derive_chunk_key, generate_master_key
from .manifest import CHUNK_SIZE, ChunkManifest

logger = logging.getLogger(__name__)

ByteSource = Union[bytes, bytearray, memoryview, BinaryIO]
ProgressCallback = Callable[[float], None]


class CancellationToken:
    """Thread-safe flag a caller sets to stop a running encrypt / decrypt."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled by caller")


@dataclass(frozen=True)
class EncryptedChunk:
    index: int
    ciphertext: bytes = field(repr=False)
    iv: bytes

    @property
    def length(self) -> int:
        return len(self.ciphertext)

    @property
    def plaintext_length(self) -> int:
        return len(self.ciphertext) - TAG_SIZE

    @property
    def iv_b64(self) -> str:
        return base64.b64encode(self.iv).decode("ascii")


@dataclass
class UploadBundle:
    """Everything the storage side needs: ciphertext chunks, manifest, exported key."""

    chunks: List[EncryptedChunk]
    manifest: ChunkManifest
    key_b64: str = field(repr=False)

    def blob(self) -> bytes:
        """Concatenated ciphertext, as persisted by the content store."""
        return b"".join(c.ciphertext for c in self.chunks)


def progress_percent(index: int, total: int) -> float:
    return ((index + 1) / total) * 100


def plan_chunks(total_length: int, chunk_size: int = CHUNK_SIZE) -> List[Tuple[int, int]]:
    """
    Return the ``(start, end)`` plaintext range of every chunk.

    An empty source is planned as one empty chunk so the manifest is never
    empty and the key is still authenticated on download.
    """
    if total_length < 0:
        raise MalformedInputError(f"Source length must be non-negative, got {total_length}")
    if total_length == 0:
        return [(0, 0)]
    total_chunks = -(-total_length // chunk_size)
    return [
        (i * chunk_size, min((i + 1) * chunk_size, total_length))
        for i in range(total_chunks)
    ]


# ----------------------------------------------------------------------
# Source helpers
# ----------------------------------------------------------------------

def _as_stream(source: ByteSource) -> BinaryIO:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(source)
    return source


def _source_length(source: ByteSource) -> int:
    """Bytes remaining in ``source`` from its current position."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        return len(source)
    try:
        pos = source.tell()
        end = source.seek(0, io.SEEK_END)
        source.seek(pos)
    except (OSError, io.UnsupportedOperation) as exc:
        raise MalformedInputError("total_length is required for non-seekable sources") from exc
    return end - pos


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        data = stream.read(size - len(buf))
        if not data:
            break
        buf += data
    if len(buf) != size:
        raise MalformedInputError(f"Source ended early: wanted {size} bytes, got {len(buf)}")
    return bytes(buf)


def _coerce_key(key: MasterKey | str | bytes) -> MasterKey:
    if isinstance(key, MasterKey):
        return key
    if isinstance(key, str):
        return MasterKey.from_b64(key)
    return MasterKey.from_raw(key)


def _coerce_manifest(manifest: ChunkManifest | List[str]) -> ChunkManifest:
    if isinstance(manifest, ChunkManifest):
        return manifest
    return ChunkManifest.from_ivs(manifest)


@contextmanager
def _staged_output(in_path: Path, out_path: Path) -> Iterator[BinaryIO]:
    """Yield a writable temp file next to ``out_path``; move it into place on success.

    ``out_path`` is only touched by the final ``os.replace``, so a failed run
    leaves whatever was there before.
    """
    if in_path.resolve() == out_path.resolve():
        raise MalformedInputError(f"Input and output are the same file: {in_path}")

    with tempfile.NamedTemporaryFile(
        dir=out_path.parent, prefix=f".{out_path.name}.", suffix=".part", delete=False
    ) as tmpf:
        tmp_path = Path(tmpf.name)

    try:
        with open(tmp_path, "wb") as outf:
            yield outf
        os.replace(tmp_path, out_path)
    finally:
        tmp_path.unlink(missing_ok=True)


# ----------------------------------------------------------------------
# Upload path
# ----------------------------------------------------------------------

def iter_encrypt(
    source: ByteSource,
    total_length: int,
    master_key: MasterKey,
    cancel_token: Optional[CancellationToken] = None,
) -> Iterator[EncryptedChunk]:
    """Yield the encrypted chunks of ``source`` in index order."""
    stream = _as_stream(source)
    for index, (start, end) in enumerate(plan_chunks(total_length)):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        plaintext = _read_exact(stream, end - start)
        chunk_key = derive_chunk_key(master_key, index)
        ciphertext, iv = encrypt_chunk(plaintext, chunk_key)
        logger.debug("Encrypted chunk %d: plaintext [%d, %d), %d bytes out", index, start, end, len(ciphertext))
        yield EncryptedChunk(index=index, ciphertext=ciphertext, iv=iv)


def encrypt_stream(
    source: ByteSource,
    total_length: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    master_key: Optional[MasterKey] = None,
) -> UploadBundle:
    """
    Encrypt ``source`` under a fresh master key and return the upload bundle.

    Any chunk-level failure propagates and no bundle is returned.
    """
    if total_length is None:
        total_length = _source_length(source)
    if master_key is None:
        master_key = generate_master_key()

    total_chunks = len(plan_chunks(total_length))
    logger.info("Encrypting %d bytes in %d chunk(s)", total_length, total_chunks)

    manifest = ChunkManifest()
    chunks: List[EncryptedChunk] = []
    for chunk in iter_encrypt(source, total_length, master_key, cancel_token):
        chunks.append(chunk)
        manifest.append(chunk.iv, chunk.length)
        if on_progress is not None:
            on_progress(progress_percent(chunk.index, total_chunks))

    return UploadBundle(chunks=chunks, manifest=manifest, key_b64=master_key.export_b64())


def encrypt_file(
    in_path: str | Path,
    out_path: str | Path,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    master_key: Optional[MasterKey] = None,
) -> Tuple[ChunkManifest, MasterKey]:
    """Encrypt ``in_path`` into a concatenated ciphertext blob at ``out_path``.

    Chunks are written to a temp file beside ``out_path`` as they are produced
    and moved into place once the last chunk is written. On failure the temp
    file is removed and ``out_path`` is left untouched.
    """
    in_path = Path(in_path)
    out_path = Path(out_path)
    if master_key is None:
        master_key = generate_master_key()

    total_length = in_path.stat().st_size
    total_chunks = len(plan_chunks(total_length))
    manifest = ChunkManifest()

    logger.info("Encrypting %s (%d bytes, %d chunk(s)) -> %s", in_path, total_length, total_chunks, out_path)
    with open(in_path, "rb") as inf, _staged_output(in_path, out_path) as outf:
        for chunk in iter_encrypt(inf, total_length, master_key, cancel_token):
            outf.write(chunk.ciphertext)
            manifest.append(chunk.iv, chunk.length)
            if on_progress is not None:
                on_progress(progress_percent(chunk.index, total_chunks))

    return manifest, master_key


# ----------------------------------------------------------------------
# Download path
# ----------------------------------------------------------------------

def chunk_layout(
    blob_size: int,
    manifest: ChunkManifest,
    allow_partial: bool = False,
) -> List[Tuple[int, int, int]]:
    """
    Compute ``(index, offset, length)`` of every chunk in a blob of ``blob_size`` bytes.

    Explicit manifest lengths are used when present. Otherwise each non-final
    chunk is ``chunk_size + TAG_SIZE`` and the final chunk takes what remains.

    A chunk with a non-positive length raises MalformedManifestError, or with
    ``allow_partial`` is logged and skipped.
    """
    total = len(manifest)
    if total == 0:
        if blob_size:
            raise MalformedManifestError(f"Manifest lists no chunks but blob holds {blob_size} bytes")
        return []

    if manifest.has_lengths and manifest.ciphertext_size != blob_size:
        raise MalformedManifestError(
            f"Manifest describes {manifest.ciphertext_size} ciphertext bytes, blob holds {blob_size}"
        )

    layout = []
    offset = 0
    for index, entry in enumerate(manifest):
        if entry.length is not None:
            length = entry.length
        elif index < total - 1:
            length = manifest.chunk_size + TAG_SIZE
        else:
            length = blob_size - offset

        if length <= 0:
            if not allow_partial:
                raise MalformedManifestError(
                    f"Chunk {index} has non-positive length {length} at offset {offset}"
                )
            logger.warning("Skipping empty/invalid chunk %d (offset %d, length %d)", index, offset, length)
            continue
        if length < TAG_SIZE:
            raise MalformedManifestError(f"Chunk {index} is too short to hold a tag ({length} bytes)")
        if offset + length > blob_size:
            raise MalformedManifestError(
                f"Chunk {index} [{offset}, {offset + length}) runs past the end of the blob ({blob_size} bytes)"
            )

        layout.append((index, offset, length))
        offset += length
    return layout


def _blob_size(blob: ByteSource) -> int:
    if isinstance(blob, (bytes, bytearray, memoryview)):
        return len(blob)
    try:
        return blob.seek(0, io.SEEK_END)
    except (OSError, io.UnsupportedOperation) as exc:
        raise MalformedInputError("Ciphertext blob must be bytes or a seekable file") from exc


def _read_slice(blob: ByteSource, offset: int, length: int) -> bytes:
    if isinstance(blob, (bytes, bytearray, memoryview)):
        return bytes(memoryview(blob)[offset:offset + length])
    blob.seek(offset)
    return _read_exact(blob, length)


def iter_decrypt(
    blob: ByteSource,
    manifest: ChunkManifest | List[str],
    master_key: MasterKey,
    cancel_token: Optional[CancellationToken] = None,
    allow_partial: bool = False,
) -> Iterator[Tuple[int, bytes]]:
    """Yield ``(index, plaintext)`` for each chunk of ``blob`` in index order.

    An authentication failure on any chunk stops the whole reconstruction
    with DecryptionFailedError; later chunks are not attempted.
    """
    manifest = _coerce_manifest(manifest)
    blob_size = _blob_size(blob)
    layout = chunk_layout(blob_size, manifest, allow_partial=allow_partial)
    logger.info("Decrypting %d chunk(s). Total encrypted size: %d bytes", len(manifest), blob_size)

    for index, offset, length in layout:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        logger.debug("Processing chunk %d: offset %d, size %d", index, offset, length)
        ciphertext = _read_slice(blob, offset, length)
        chunk_key = derive_chunk_key(master_key, index)
        try:
            plaintext = decrypt_chunk(ciphertext, chunk_key, manifest[index].iv)
        except AuthenticationError as exc:
            logger.error("Failed to decrypt chunk %d (offset %d, size %d)", index, offset, length)
            raise DecryptionFailedError(index) from exc
        yield index, plaintext


def reconstruct(
    blob: ByteSource,
    key: MasterKey | str | bytes,
    manifest: ChunkManifest | List[str],
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    allow_partial: bool = False,
) -> bytes:
    """
    Decrypt a concatenated ciphertext blob back into the original bytes.

    ``key`` may be a MasterKey, its base64 export, or raw key bytes;
    ``manifest`` may be a ChunkManifest or the legacy list of base64 IVs.
    """
    master_key = _coerce_key(key)
    manifest = _coerce_manifest(manifest)
    total = len(manifest)

    parts: List[bytes] = []
    for index, plaintext in iter_decrypt(blob, manifest, master_key, cancel_token, allow_partial):
        parts.append(plaintext)
        if on_progress is not None:
            on_progress(progress_percent(index, total))

    logger.info("Decryption complete. Reassembled %d chunk(s)", len(parts))
    return b"".join(parts)


def decrypt_file(
    in_path: str | Path,
    out_path: str | Path,
    manifest: ChunkManifest | List[str],
    key: MasterKey | str | bytes,
    on_progress: Optional[ProgressCallback] = None,
    cancel_token: Optional[CancellationToken] = None,
    allow_partial: bool = False,
) -> int:
    """Decrypt the blob at ``in_path`` into ``out_path``; returns plaintext bytes written.

    Plaintext is streamed to a temp file chunk by chunk and moved onto
    ``out_path`` only after every chunk authenticates.
    """
    in_path = Path(in_path)
    out_path = Path(out_path)
    master_key = _coerce_key(key)
    manifest = _coerce_manifest(manifest)
    total = len(manifest)

    written = 0
    with open(in_path, "rb") as inf, _staged_output(in_path, out_path) as outf:
        for index, plaintext in iter_decrypt(inf, manifest, master_key, cancel_token, allow_partial):
            outf.write(plaintext)
            written += len(plaintext)
            if on_progress is not None:
                on_progress(progress_percent(index, total))

    logger.info("Decrypted %s -> %s (%d bytes)", in_path, out_path, written)
    return written
