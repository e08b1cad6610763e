"""Runtime settings and context for the ChunkVault command line tool."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os

from chunkvault.core.storage import BlobStore
from chunkvault.security.keystore import DEFAULT_SERVICE


@dataclass
class Settings:
    """Configuration read from the environment."""

    storage_root: Path
    log_level: str = "INFO"
    keyring_service: str = DEFAULT_SERVICE


@dataclass
class AppContext:
    """Container for runtime objects the CLI needs."""

    settings: Settings
    _store: Optional[BlobStore] = None

    @property
    def store(self) -> BlobStore:
        # created on first use so commands without --store never touch the disk
        if self._store is None:
            self._store = BlobStore(str(self.settings.storage_root))
        return self._store


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build :class:`Settings` from environment variables.

    - ``CHUNKVAULT_STORAGE_ROOT``: local blob store root (default ``~/.chunkvault``)
    - ``CHUNKVAULT_LOG_LEVEL``: logging level name (default ``INFO``)
    - ``CHUNKVAULT_KEYRING_SERVICE``: keyring service name (default ``chunkvault``)
    """
    env = os.environ if env is None else env
    root = env.get("CHUNKVAULT_STORAGE_ROOT") or str(Path.home() / ".chunkvault")
    return Settings(
        storage_root=Path(root).expanduser(),
        log_level=(env.get("CHUNKVAULT_LOG_LEVEL") or "INFO").upper(),
        keyring_service=env.get("CHUNKVAULT_KEYRING_SERVICE") or DEFAULT_SERVICE,
    )


def build_context(settings: Optional[Settings] = None) -> AppContext:
    return AppContext(settings=settings or load_settings())
