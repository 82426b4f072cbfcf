"""
API key lookup.

Keys come from the environment or from a key file in the workspace
(written with 0600 permissions). A missing key is a configuration error
for any network call.
"""

import os
from pathlib import Path
from typing import Optional

from .errors import MissingCredentialError

ENV_VARS = ("CARDRECALL_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY")
PROVIDER_ENV_VARS = {
    "gemini": ENV_VARS,
    "openai": ("CARDRECALL_API_KEY", "CARDRECALL_OPENAI_API_KEY", "OPENAI_API_KEY"),
}
KEY_FILENAME = "api-key"


class EnvCredentialStore:
    """Reads the first non-empty variable of ``env_vars``."""

    def __init__(self, env_vars: tuple[str, ...] = ENV_VARS):
        self._env_vars = env_vars

    def load_api_key(self) -> Optional[str]:
        for name in self._env_vars:
            value = os.environ.get(name, "").strip()
            if value:
                return value
        return None


class FileCredentialStore:
    """A single-line key file, readable only by its owner."""

    def __init__(self, path: Path):
        self._path = Path(path)

    def load_api_key(self) -> Optional[str]:
        try:
            value = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return value or None

    def save_api_key(self, key: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(key.strip() + "\n")

    def delete_api_key(self) -> None:
        self._path.unlink(missing_ok=True)


class StaticCredentialStore:
    """A key supplied by the caller."""

    def __init__(self, key: Optional[str]):
        self._key = key

    def load_api_key(self) -> Optional[str]:
        return self._key


class ChainedCredentialStore:
    """First store that returns a key wins."""

    def __init__(self, *stores):
        self._stores = stores

    def load_api_key(self) -> Optional[str]:
        for store in self._stores:
            key = store.load_api_key()
            if key:
                return key
        return None


def default_credential_store(workspace_path: Path, provider: str = "gemini") -> ChainedCredentialStore:
    """Environment first, then the workspace key file."""
    return ChainedCredentialStore(
        EnvCredentialStore(PROVIDER_ENV_VARS.get(provider, ENV_VARS)),
        FileCredentialStore(Path(workspace_path) / KEY_FILENAME),
    )


def require_api_key(store) -> str:
    """
    Return the configured key.

    Raises:
        MissingCredentialError: If no store has a key
    """
    key = store.load_api_key() if store is not None else None
    if not key or not key.strip():
        raise MissingCredentialError()
    return key.strip()
