"""Key management: per-file master keys and the per-chunk keys derived from them.

A master key is 32 random bytes generated once per file. Chunk keys are never
stored; they are re-derived with HKDF-SHA256 whenever a chunk is encrypted or
decrypted:

    chunk_key = HKDF(master, salt=16 zero bytes, info=b"chunk-<index>")

The salt is fixed because only the master key is secret; the info string
gives each chunk its own key.

Master keys leave the process in one of three forms:
- raw / base64 export (:meth:`MasterKey.export_b64`)
- wrapped for a single recipient with RSA-OAEP (:func:`wrap_master_key`)
- sealed under a passphrase with Argon2id + AES-GCM (:func:`seal_master_key`)
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from argon2.exceptions import HashingError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from chunkvault.core.exceptions import (
    AuthenticationError,
    KeyDerivationError,
    KeyExportError,
    KeyGenerationError,
    KeyWrapError,
)
from .kdf import (
    DEFAULT_MEMORY_COST,
    DEFAULT_PARALLELISM,
    DEFAULT_TIME_COST,
    derive_passphrase_key,
    generate_salt,
    kdf_params_from_dict,
    kdf_params_to_dict,
)

logger = logging.getLogger(__name__)

KEY_SIZE = 32
CHUNK_KEY_SALT = bytes(16)
SEALED_KEY_VERSION = 1


@dataclass(frozen=True)
class MasterKey:
    """256-bit per-file key. ``material`` is kept out of repr()."""

    material: bytes = field(repr=False)
    extractable: bool = True

    def __post_init__(self):
        if not isinstance(self.material, (bytes, bytearray)) or len(self.material) != KEY_SIZE:
            raise KeyDerivationError(f"Master key must be exactly {KEY_SIZE} bytes")
        object.__setattr__(self, "material", bytes(self.material))

    @classmethod
    def from_raw(cls, raw: bytes, extractable: bool = True) -> "MasterKey":
        return cls(bytes(raw), extractable=extractable)

    @classmethod
    def from_b64(cls, encoded: str, extractable: bool = True) -> "MasterKey":
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise KeyDerivationError("Master key is not valid base64") from exc
        return cls.from_raw(raw, extractable=extractable)

    def export_raw(self) -> bytes:
        if not self.extractable:
            raise KeyExportError("Master key is not extractable")
        return bytes(self.material)

    def export_b64(self) -> str:
        return base64.b64encode(self.export_raw()).decode("ascii")


@dataclass(frozen=True)
class ChunkKey:
    index: int
    material: bytes = field(repr=False)


def generate_master_key() -> MasterKey:
    """Return a fresh extractable 256-bit master key from the OS CSPRNG."""
    try:
        material = os.urandom(KEY_SIZE)
    except (NotImplementedError, OSError) as exc:
        raise KeyGenerationError("Secure random source unavailable") from exc
    return MasterKey(material)


def derive_chunk_key(master_key: MasterKey, index: int) -> ChunkKey:
    """Derive the key for chunk ``index``; same inputs always give the same key."""
    if isinstance(index, bool) or not isinstance(index, int):
        raise KeyDerivationError(f"Chunk index must be an integer, got {index!r}")
    if index < 0:
        raise KeyDerivationError(f"Chunk index must be non-negative, got {index}")
    if not isinstance(master_key, MasterKey):
        raise KeyDerivationError("Invalid master key")
    if not master_key.extractable:
        raise KeyDerivationError("Master key is not extractable; cannot derive chunk keys")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=CHUNK_KEY_SALT,
        info=f"chunk-{index}".encode("utf-8"),
    )
    return ChunkKey(index=index, material=hkdf.derive(master_key.material))


# ----------------------------------------------------------------------
# Recipient key wrapping
# ----------------------------------------------------------------------

def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def recipient_fingerprint(public_key: rsa.RSAPublicKey) -> str:
    der = public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


@dataclass(frozen=True)
class WrappedKey:
    """Master key encapsulated for one recipient."""

    recipient_id: str
    encapsulated_key: bytes = field(repr=False)

    def to_dict(self) -> Dict[str, str]:
        return {
            "recipient_id": self.recipient_id,
            "encapsulated_key": base64.b64encode(self.encapsulated_key).decode("ascii"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WrappedKey":
        try:
            return cls(
                recipient_id=str(data["recipient_id"]),
                encapsulated_key=base64.b64decode(data["encapsulated_key"], validate=True),
            )
        except (KeyError, TypeError, binascii.Error, ValueError) as exc:
            raise KeyWrapError("Malformed wrapped key record") from exc


def _load_public_key(public_key_pem: bytes | str) -> rsa.RSAPublicKey:
    if isinstance(public_key_pem, str):
        public_key_pem = public_key_pem.encode("ascii")
    try:
        key = serialization.load_pem_public_key(public_key_pem)
    except ValueError as exc:
        raise KeyWrapError("Recipient public key is not a valid PEM key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise KeyWrapError("Recipient public key must be an RSA key")
    return key


def wrap_master_key(master_key: MasterKey, public_key_pem: bytes | str) -> WrappedKey:
    """Encapsulate ``master_key`` for the holder of ``public_key_pem`` (RSA-OAEP/SHA-256)."""
    public_key = _load_public_key(public_key_pem)
    try:
        raw = master_key.export_raw()
    except KeyExportError as exc:
        raise KeyWrapError("Cannot wrap a non-extractable master key") from exc
    encapsulated = public_key.encrypt(raw, _oaep())
    recipient_id = recipient_fingerprint(public_key)
    logger.debug("Wrapped master key for recipient %s", recipient_id[:16])
    return WrappedKey(recipient_id=recipient_id, encapsulated_key=encapsulated)


def unwrap_master_key(
    wrapped: WrappedKey,
    private_key_pem: bytes | str,
    password: Optional[bytes] = None,
) -> MasterKey:
    """Recover the master key from ``wrapped`` with the recipient's private key."""
    if isinstance(private_key_pem, str):
        private_key_pem = private_key_pem.encode("ascii")
    try:
        private_key = serialization.load_pem_private_key(private_key_pem, password=password)
    except (ValueError, TypeError) as exc:
        raise KeyWrapError("Private key could not be loaded") from exc
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise KeyWrapError("Private key must be an RSA key")

    if recipient_fingerprint(private_key.public_key()) != wrapped.recipient_id:
        raise KeyWrapError("Wrapped key was not issued for this recipient")
    try:
        raw = private_key.decrypt(wrapped.encapsulated_key, _oaep())
    except ValueError as exc:
        raise KeyWrapError("Failed to unwrap master key") from exc
    return MasterKey.from_raw(raw)


# ----------------------------------------------------------------------
# Passphrase sealing
# ----------------------------------------------------------------------

def _sealing_key(passphrase, salt, time_cost, memory_cost, parallelism) -> bytes:
    try:
        return derive_passphrase_key(
            passphrase,
            salt,
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
        )
    except (ValueError, OverflowError, HashingError) as exc:
        raise KeyDerivationError(f"Passphrase key derivation failed: {exc}") from exc


def seal_master_key(
    master_key: MasterKey,
    passphrase: bytes | str,
    time_cost: int = DEFAULT_TIME_COST,
    memory_cost: int = DEFAULT_MEMORY_COST,
    parallelism: int = DEFAULT_PARALLELISM,
) -> Dict[str, Any]:
    """
    Seal ``master_key`` under ``passphrase``.

    The returned dict is JSON-serializable:
    ``{"version", "kdf": {...argon2id params...}, "nonce", "ciphertext"}``
    with nonce and ciphertext hex-encoded.
    """
    salt = generate_salt()
    kek = _sealing_key(passphrase, salt, time_cost, memory_cost, parallelism)
    nonce = os.urandom(12)
    ct = AESGCM(kek).encrypt(nonce, master_key.export_raw(), b"chunkvault-sealed-key")
    return {
        "version": SEALED_KEY_VERSION,
        "kdf": kdf_params_to_dict(salt, time_cost, memory_cost, parallelism),
        "nonce": nonce.hex(),
        "ciphertext": ct.hex(),
    }


def open_master_key(sealed: Dict[str, Any], passphrase: bytes | str) -> MasterKey:
    """Reverse :func:`seal_master_key`; raises AuthenticationError on a wrong passphrase."""
    try:
        if int(sealed["version"]) != SEALED_KEY_VERSION:
            raise KeyDerivationError(f"Unsupported sealed key version {sealed['version']}")
        salt, time_cost, memory_cost, parallelism = kdf_params_from_dict(sealed["kdf"])
        nonce = bytes.fromhex(sealed["nonce"])
        if len(nonce) != 12:
            raise ValueError("sealed key nonce must be 12 bytes")
        ct = bytes.fromhex(sealed["ciphertext"])
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise KeyDerivationError("Malformed sealed key record") from exc

    kek = _sealing_key(passphrase, salt, time_cost, memory_cost, parallelism)
    try:
        raw = AESGCM(kek).decrypt(nonce, ct, b"chunkvault-sealed-key")
    except InvalidTag as exc:
        raise AuthenticationError("Wrong passphrase or tampered key record") from exc
    return MasterKey.from_raw(raw)
