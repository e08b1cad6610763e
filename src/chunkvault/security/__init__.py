"""Security helpers: key management and chunked AEAD encryption for ChunkVault.

This package provides:
- per-file master keys and HKDF-derived per-chunk keys
- an AES-256-GCM codec for single chunks
- the chunk manifest (IVs and ciphertext lengths)
- the upload / download loops that split, encrypt, locate and reassemble chunks
- optional key custody: recipient wrapping, passphrase sealing, OS keystore
"""

from .keys import (
    MasterKey,
    ChunkKey,
    WrappedKey,
    generate_master_key,
    derive_chunk_key,
    wrap_master_key,
    unwrap_master_key,
    seal_master_key,
    open_master_key,
)
from .codec import encrypt_chunk, decrypt_chunk
from .manifest import CHUNK_SIZE, ChunkManifest, ManifestEntry
from .assembler import (
    CancellationToken,
    EncryptedChunk,
    UploadBundle,
    plan_chunks,
    chunk_layout,
    iter_encrypt,
    iter_decrypt,
    encrypt_stream,
    encrypt_file,
    reconstruct,
    decrypt_file,
)

__all__ = [
    "MasterKey",
    "ChunkKey",
    "WrappedKey",
    "generate_master_key",
    "derive_chunk_key",
    "wrap_master_key",
    "unwrap_master_key",
    "seal_master_key",
    "open_master_key",
    "encrypt_chunk",
    "decrypt_chunk",
    "CHUNK_SIZE",
    "ChunkManifest",
    "ManifestEntry",
    "CancellationToken",
    "EncryptedChunk",
    "UploadBundle",
    "plan_chunks",
    "chunk_layout",
    "iter_encrypt",
    "iter_decrypt",
    "encrypt_stream",
    "encrypt_file",
    "reconstruct",
    "decrypt_file",
]
