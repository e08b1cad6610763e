"""Per-chunk AES-256-GCM codec.

Each call is independent: encryption draws a fresh 96-bit IV from the OS
CSPRNG and returns ``ciphertext || tag`` together with that IV. No associated
data is bound; the chunk index is already bound through the chunk key.
"""
from __future__ import annotations

import logging
import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from chunkvault.core.exceptions import (
    AuthenticationError,
    KeyGenerationError,
    MalformedInputError,
)
from .keys import ChunkKey

logger = logging.getLogger(__name__)

IV_SIZE = 12
TAG_SIZE = 16


def _aead(key: ChunkKey | bytes) -> AESGCM:
    material = key.material if isinstance(key, ChunkKey) else key
    return AESGCM(material)


def generate_iv() -> bytes:
    try:
        return os.urandom(IV_SIZE)
    except (NotImplementedError, OSError) as exc:
        # never fall back to a predictable IV
        raise KeyGenerationError("Secure random source unavailable for IV") from exc


def encrypt_chunk(plaintext: bytes, key: ChunkKey | bytes) -> Tuple[bytes, bytes]:
    """Encrypt one chunk; returns ``(ciphertext, iv)`` with len(ciphertext) == len(plaintext) + 16."""
    iv = generate_iv()
    ciphertext = _aead(key).encrypt(iv, bytes(plaintext), None)
    return ciphertext, iv


def decrypt_chunk(ciphertext: bytes, key: ChunkKey | bytes, iv: bytes) -> bytes:
    """Authenticate and decrypt one chunk.

    Raises MalformedInputError if the IV is not 12 bytes or the ciphertext is
    too short to hold a tag, AuthenticationError if the tag does not verify.
    """
    if len(iv) != IV_SIZE:
        raise MalformedInputError(f"IV must be {IV_SIZE} bytes, got {len(iv)}")
    if len(ciphertext) < TAG_SIZE:
        raise MalformedInputError(
            f"Ciphertext too short to contain a tag ({len(ciphertext)} < {TAG_SIZE})"
        )
    try:
        return _aead(key).decrypt(iv, bytes(ciphertext), None)
    except InvalidTag as exc:
        raise AuthenticationError("Chunk authentication failed (tag mismatch)") from exc
