"""Durable key-value storage for session secrets and server registrations.

The client core only relies on the :class:`CredentialStore` contract:
awaitable ``get``/``set``/``remove`` over string keys and string values.
Two implementations ship here: an in-memory store and a JSON file store
that encrypts session secrets at rest.
"""

import asyncio
import getpass
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple, runtime_checkable

from .credential_cipher import CredentialCipher, CredentialDecryptionError
from .exceptions import CredentialStoreError

logger = logging.getLogger(__name__)

TOKEN_KEY = "kavita_token"
REFRESH_TOKEN_KEY = "kavita_refresh_token"
API_KEY = "kavita_api_key"
SERVERS_KEY = "kavita_servers"
PRIMARY_SERVER_KEY = "kavita_primary_server"

SESSION_KEYS = (TOKEN_KEY, REFRESH_TOKEN_KEY, API_KEY)

_ENCRYPTED_PREFIX = "enc:v1:"


def namespaced_key(prefix: str, key: str) -> str:
    """Scope a session key to one server, e.g. ``"17:kavita_token"``."""
    return f"{prefix}:{key}" if prefix else key


def is_secret_key(key: str) -> bool:
    return key.rsplit(":", 1)[-1] in SESSION_KEYS


@runtime_checkable
class CredentialStore(Protocol):
    """Awaitable key-value persistence boundary."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class InMemoryCredentialStore:
    """Process-local store, used for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        """Copy of the current contents."""
        return dict(self._data)


class FileCredentialStore:
    """JSON file backed store with owner-only permissions.

    Features:
    - Lazy load on first access, in-memory copy afterwards
    - Atomic writes (temp file + rename) with 0o600 permissions
    - Session secrets encrypted with :class:`CredentialCipher`, decrypted
      once and cached per stored value
    - File IO and key derivation run in worker threads
    - Writes serialized through an asyncio lock
    """

    def __init__(
        self,
        path: Path,
        cipher: Optional[CredentialCipher] = None,
    ):
        self.path = Path(path)
        self.cipher = cipher or CredentialCipher(
            identity=f"{getpass.getuser()}:{self.path.resolve()}"
        )
        self._data: Optional[Dict[str, str]] = None
        # key -> (stored ciphertext, plaintext)
        self._plaintext: Dict[str, Tuple[str, str]] = {}
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}

        # Auto-fix insecure permissions instead of refusing to read
        if self.path.stat().st_mode & 0o077:
            self.path.chmod(0o600)

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CredentialStoreError(
                f"Failed to read credential store {self.path}", str(e), path=self.path
            )

        if not isinstance(raw, dict):
            logger.warning(
                f"Credential store {self.path} has unexpected shape, starting empty"
            )
            raw = {}

        return {str(k): str(v) for k, v in raw.items()}

    async def _load(self) -> Dict[str, str]:
        if self._data is None:
            data = await asyncio.to_thread(self._read)
            # Another task may have loaded (and modified) the data meanwhile
            if self._data is None:
                self._data = data
        return self._data

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(temp_path, self.path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise CredentialStoreError(
                f"Failed to write credential store {self.path}", str(e), path=self.path
            )

    async def get(self, key: str) -> Optional[str]:
        value = (await self._load()).get(key)
        if value is None:
            return None
        if not value.startswith(_ENCRYPTED_PREFIX):
            return value

        cached = self._plaintext.get(key)
        if cached is not None and cached[0] == value:
            return cached[1]

        try:
            plaintext = await asyncio.to_thread(
                self.cipher.decrypt, value[len(_ENCRYPTED_PREFIX) :]
            )
        except CredentialDecryptionError as e:
            logger.warning(f"Discarding unreadable secret '{key}': {e}")
            return None
        self._plaintext[key] = (value, plaintext)
        return plaintext

    async def set(self, key: str, value: str) -> None:
        stored = value
        if is_secret_key(key):
            stored = _ENCRYPTED_PREFIX + await asyncio.to_thread(self.cipher.encrypt, value)
        async with self._lock:
            data = await self._load()
            data[key] = stored
            if stored != value:
                self._plaintext[key] = (stored, value)
            await asyncio.to_thread(self._write, dict(data))

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = await self._load()
            self._plaintext.pop(key, None)
            if key not in data:
                return
            del data[key]
            await asyncio.to_thread(self._write, dict(data))
