"""Session state: the "logged in" hint and the stores that hold it.

The flag mirrors what the UI believes about the login, it is not a
security boundary. It lives in a key-value store under a fixed key so it
survives restarts when backed by ``FileStore``.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, MutableMapping, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SESSION_FLAG_KEY = "isLoggedIn"
SESSION_FLAG_VALUE = "yes"


class KeyValueStore(ABC):
    """Abstract base class for string key-value stores."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under ``key`` or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Delete ``key``; missing keys are ignored."""
        pass


class MemoryStore(KeyValueStore):
    """Store backed by a mapping.

    Any mutable mapping works, including a Flask session object.
    """

    def __init__(self, mapping: Optional[MutableMapping[str, Any]] = None):
        self._mapping = mapping if mapping is not None else {}

    def get(self, key: str) -> Optional[str]:
        return self._mapping.get(key)

    def set(self, key: str, value: str) -> None:
        self._mapping[key] = value

    def remove(self, key: str) -> None:
        self._mapping.pop(key, None)


class FileStore(KeyValueStore):
    """Encrypted JSON file store.

    The whole store is a single Fernet-encrypted JSON object. The Fernet key
    is derived from an arbitrary secret string with SHA-256.
    """

    def __init__(self, file_path: str, encryption_key: str):
        """Initialize file store.

        Args:
            file_path: Path of the encrypted store file
            encryption_key: Secret used to derive the Fernet key
        """
        self._path = Path(file_path)
        self._fernet = self._create_fernet(encryption_key)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _create_fernet(self, key: str) -> Fernet:
        derived = hashlib.sha256(key.encode()).digest()
        return Fernet(base64.urlsafe_b64encode(derived))

    def _read(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self._path.read_bytes())
            return json.loads(decrypted.decode())
        except (InvalidToken, json.JSONDecodeError) as e:
            logger.error("Error reading store file %s: %s", self._path, e)
            return {}

    def _write(self, data: Dict[str, str]) -> None:
        try:
            encrypted = self._fernet.encrypt(json.dumps(data).encode())
            self._path.write_bytes(encrypted)
        except OSError as e:
            logger.error("Error writing store file %s: %s", self._path, e)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class SessionState:
    """Process-wide "logged in" flag with explicit accessors."""

    def __init__(self, store: Optional[KeyValueStore] = None):
        self._store = store if store is not None else MemoryStore()
        # Transfers complete on worker threads
        self._lock = threading.Lock()

    @property
    def store(self) -> KeyValueStore:
        return self._store

    def is_logged_in(self) -> bool:
        with self._lock:
            return self._store.get(SESSION_FLAG_KEY) is not None

    def mark_logged_in(self) -> None:
        with self._lock:
            self._store.set(SESSION_FLAG_KEY, SESSION_FLAG_VALUE)

    def clear(self) -> None:
        with self._lock:
            self._store.remove(SESSION_FLAG_KEY)
