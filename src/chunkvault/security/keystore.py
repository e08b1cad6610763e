"""OS keystore integration using keyring for optional per-file master-key custody.

Master keys are stored base64-encoded under ``(service, file_id)``. Use this
only for opt-in convenience storage on the uploading machine; do not assume
keyring provides hardware-backed security on all platforms.
"""
import base64
import binascii
import logging
from typing import Optional

from .keys import MasterKey

try:
    import keyring
    from keyring.errors import KeyringError, PasswordDeleteError
except ImportError:
    keyring = None

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "chunkvault"


def _require_keyring():
    if keyring is None:
        raise RuntimeError("keyring package is not available; install keyring to use keystore features")


def save_key(service: str, account: str, key_bytes: bytes) -> None:
    """Persist binary key_bytes in the OS keystore under (service, account)."""
    _require_keyring()
    secret = base64.b64encode(key_bytes).decode("ascii")
    keyring.set_password(service, account, secret)


def assess_keyring_backend() -> tuple[bool, str]:
    """Return (is_secure, message) describing the current keyring backend.

    Heuristics are used because the `keyring` package exposes different backends
    across platforms. If `keyring` is not available this returns (False, reason).
    """
    if keyring is None:
        return False, "keyring package is not installed"

    try:
        backend = keyring.get_keyring()
    except KeyringError as e:
        return False, f"failed to get keyring backend: {e}"

    name = backend.__class__.__name__
    priority = getattr(backend, "priority", None)

    insecure_indicators = ("Plaintext", "Uncrypted", "Null", "Fail", "File")
    if any(tok in name for tok in insecure_indicators):
        return False, f"insecure backend detected: {name}"

    if priority is not None and priority <= 0:
        return False, f"no suitable secure keyring backend available (priority={priority}, backend={name})"

    if "Win" in name or "Keychain" in name or "SecretService" in name or "KWallet" in name:
        return True, f"backend looks acceptable: {name} (priority={priority})"

    return True, f"unknown backend '{name}', treat with caution (priority={priority})"


def load_key(service: str, account: str) -> Optional[bytes]:
    """Load a persisted key from the OS keystore; returns raw bytes or None."""
    _require_keyring()
    secret = keyring.get_password(service, account)
    if secret is None:
        return None
    try:
        return base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Ignoring undecodable keystore entry for %s/%s", service, account)
        return None


def delete_key(service: str, account: str) -> None:
    """Remove the key from the OS keystore; a missing entry is not an error."""
    _require_keyring()
    try:
        keyring.delete_password(service, account)
    except PasswordDeleteError:
        logger.debug("No keystore entry to delete for %s/%s", service, account)


def save_master_key(
    file_id: str,
    master_key: MasterKey,
    service: str = DEFAULT_SERVICE,
    force: bool = False,
) -> None:
    """
    Store the master key of ``file_id`` in the OS keystore.

    Refuses backends that look insecure unless ``force`` is set.
    """
    if not force:
        secure, msg = assess_keyring_backend()
        if not secure:
            raise RuntimeError(
                f"refusing to persist master key to OS keystore: {msg}; "
                "pass force=True to override if you understand the risk"
            )
    save_key(service, file_id, master_key.export_raw())
    logger.info("Stored master key for %s in keystore service %r", file_id, service)


def load_master_key(file_id: str, service: str = DEFAULT_SERVICE) -> Optional[MasterKey]:
    """Return the stored master key of ``file_id`` or None when absent."""
    raw = load_key(service, file_id)
    if raw is None:
        return None
    return MasterKey.from_raw(raw)
