"""
Unit tests for the keystore module.
"""

import base64
import pytest
from unittest.mock import MagicMock, patch

from keyring.errors import KeyringError, PasswordDeleteError

from chunkvault.security import keystore
from chunkvault.security.keys import MasterKey, generate_master_key


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def mock_keyring_lib():
    """Patches the keyring module within chunkvault.security.keystore."""
    with patch("chunkvault.security.keystore.keyring", autospec=True) as mock_lib:
        yield mock_lib


@pytest.fixture
def no_keyring_lib():
    """Simulates keyring not being installed."""
    with patch("chunkvault.security.keystore.keyring", None):
        yield


def _backend(name, priority=1):
    backend = MagicMock()
    backend.__class__.__name__ = name
    backend.priority = priority
    return backend


# ==============================================================================
# Tests: Dependency Availability
# ==============================================================================

def test_require_keyring_raises_if_missing(no_keyring_lib):
    with pytest.raises(RuntimeError, match="keyring package is not available"):
        keystore.save_key("service", "user", b"key")

    with pytest.raises(RuntimeError, match="keyring package is not available"):
        keystore.load_key("service", "user")

    with pytest.raises(RuntimeError, match="keyring package is not available"):
        keystore.delete_key("service", "user")


def test_assess_backend_returns_false_if_missing(no_keyring_lib):
    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "not installed" in msg


# ==============================================================================
# Tests: save_key / load_key / delete_key
# ==============================================================================

def test_save_key_encodes_and_stores(mock_keyring_lib):
    """Bytes are base64 encoded before storage."""
    key_bytes = b"\x01\x02\x03\x04"

    keystore.save_key("chunkvault_test", "file-1", key_bytes)

    called_service, called_account, called_secret = mock_keyring_lib.set_password.call_args[0]
    assert called_service == "chunkvault_test"
    assert called_account == "file-1"
    assert called_secret == base64.b64encode(key_bytes).decode("ascii")


def test_load_key_returns_bytes(mock_keyring_lib):
    original_key = b"secret_bytes"
    mock_keyring_lib.get_password.return_value = base64.b64encode(original_key).decode("ascii")

    assert keystore.load_key("svc", "usr") == original_key


def test_load_key_returns_none_if_missing(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = None
    assert keystore.load_key("svc", "usr") is None


def test_load_key_returns_none_on_corrupt_data(mock_keyring_lib):
    mock_keyring_lib.get_password.return_value = "NotValidBase64!!!"
    assert keystore.load_key("svc", "usr") is None


def test_delete_key_calls_backend(mock_keyring_lib):
    keystore.delete_key("svc", "usr")
    mock_keyring_lib.delete_password.assert_called_once_with("svc", "usr")


def test_delete_key_ignores_missing_entry(mock_keyring_lib):
    mock_keyring_lib.delete_password.side_effect = PasswordDeleteError("Not found")
    keystore.delete_key("svc", "usr")


# ==============================================================================
# Tests: Backend Assessment
# ==============================================================================

def test_assess_backend_handles_exception(mock_keyring_lib):
    mock_keyring_lib.get_keyring.side_effect = KeyringError("DBus error")

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "failed to get keyring backend" in msg


@pytest.mark.parametrize("name", ["PlaintextKeyring", "NullKeyring", "FailKeyring", "EncryptedFileKeyring"])
def test_assess_backend_insecure_names(mock_keyring_lib, name):
    mock_keyring_lib.get_keyring.return_value = _backend(name)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "insecure backend detected" in msg


def test_assess_backend_low_priority(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("SomeGenericBackend", priority=0)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "no suitable secure keyring backend" in msg


@pytest.mark.parametrize("name", ["KeychainKeyring", "WinVaultKeyring", "SecretServiceKeyring", "KWallet"])
def test_assess_backend_secure_names(mock_keyring_lib, name):
    mock_keyring_lib.get_keyring.return_value = _backend(name)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is True
    assert "looks acceptable" in msg


def test_assess_backend_unknown_but_high_priority(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("SuperSecureHardwareKeyring", priority=5)

    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is True
    assert "unknown backend" in msg


# ==============================================================================
# Tests: Master key custody
# ==============================================================================

def test_save_master_key_refuses_insecure_backend(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("PlaintextKeyring")

    with pytest.raises(RuntimeError, match="refusing to persist"):
        keystore.save_master_key("file-1", generate_master_key())
    mock_keyring_lib.set_password.assert_not_called()


def test_save_master_key_force_skips_assessment(mock_keyring_lib):
    mock_keyring_lib.get_keyring.return_value = _backend("PlaintextKeyring")
    key = generate_master_key()

    keystore.save_master_key("file-1", key, service="svc", force=True)

    mock_keyring_lib.set_password.assert_called_once_with("svc", "file-1", key.export_b64())


def test_save_then_load_master_key(mock_keyring_lib):
    store = {}
    mock_keyring_lib.get_keyring.return_value = _backend("KeychainKeyring")
    mock_keyring_lib.set_password.side_effect = lambda s, a, p: store.__setitem__((s, a), p)
    mock_keyring_lib.get_password.side_effect = lambda s, a: store.get((s, a))
    key = generate_master_key()

    keystore.save_master_key("file-1", key)
    loaded = keystore.load_master_key("file-1")

    assert isinstance(loaded, MasterKey)
    assert loaded == key
    assert keystore.load_master_key("file-2") is None
