"""
Persistent storage for Credential Records and Attempt Logs.

Available implementations:
    - InMemoryStore: dict-backed store for tests and short-lived processes.
    - JsonFileStore: one JSON file per key, written atomically.

Writes to a single key are atomic: a reader observes either the previous or the
new complete value. Stores never retry; failures are raised as StoreError.

Example:
    >>> from credkit._store import JsonFileStore
    >>> store = JsonFileStore(".credkit")
    >>> store.put_record(key, record)
    >>> store.get_record(key)
    CredentialRecord(token='eyJh...', ...)
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, override

from credkit._errors import StoreError
from credkit._models import AttemptEntry, CredentialKey, CredentialRecord
from credkit._utils import KeyedLocks, load_json_file, save_json_file

if TYPE_CHECKING:
    from credkit._config import StoreConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Abstract Base Class
# =============================================================================


class Store(ABC):
    """
    Durable key-value storage for Credential Records and Attempt Logs.

    Implementations must make writes to a single key atomic and must be safe
    for concurrent appends to the Attempt Log of the same key.
    """

    @abstractmethod
    def get_record(self, key: CredentialKey) -> CredentialRecord | None:
        """Return the stored record for `key`, or None."""
        pass

    @abstractmethod
    def put_record(self, key: CredentialKey, record: CredentialRecord) -> None:
        """Replace the stored record for `key`."""
        pass

    @abstractmethod
    def append_attempt(self, key: CredentialKey, entry: AttemptEntry) -> None:
        """Append an entry to the Attempt Log of `key`."""
        pass

    @abstractmethod
    def list_attempts(self, key: CredentialKey, since: float) -> list[AttemptEntry]:
        """Return Attempt Log entries of `key` with `timestamp >= since`, oldest first."""
        pass

    @abstractmethod
    def prune_attempts(self, key: CredentialKey, before: float) -> None:
        """Drop Attempt Log entries of `key` with `timestamp < before`."""
        pass


# =============================================================================
# Implementations
# =============================================================================


class InMemoryStore(Store):
    """
    Store kept in process memory. Not persistent.

    Example:
        >>> store = InMemoryStore()
        >>> store.get_record(key) is None
        True
    """

    def __init__(self) -> None:
        self._records: dict[CredentialKey, CredentialRecord] = {}
        self._attempts: dict[CredentialKey, list[AttemptEntry]] = {}
        self._lock = threading.Lock()

    @override
    def get_record(self, key: CredentialKey) -> CredentialRecord | None:
        with self._lock:
            return self._records.get(key)

    @override
    def put_record(self, key: CredentialKey, record: CredentialRecord) -> None:
        with self._lock:
            self._records[key] = record

    @override
    def append_attempt(self, key: CredentialKey, entry: AttemptEntry) -> None:
        with self._lock:
            self._attempts.setdefault(key, []).append(entry)

    @override
    def list_attempts(self, key: CredentialKey, since: float) -> list[AttemptEntry]:
        with self._lock:
            return [e for e in self._attempts.get(key, []) if e.timestamp >= since]

    @override
    def prune_attempts(self, key: CredentialKey, before: float) -> None:
        with self._lock:
            if key in self._attempts:
                self._attempts[key] = [e for e in self._attempts[key] if e.timestamp >= before]


class JsonFileStore(Store):
    """
    Store backed by JSON files in a directory.

    Layout:
        <path>/records/<identity>.<service_id>.json
        <path>/attempts/<identity>.<service_id>.json

    Each file is replaced atomically (temporary file + os.replace). Appends to
    an Attempt Log are read-modify-write operations serialized by an in-process
    lock per key.

    Args:
        path: Directory holding the store files. Created on first write.
    """

    def __init__(self, path: Path | str):
        assert path, "Store path cannot be empty."

        self.path = Path(path)
        self._locks = KeyedLocks()

    def _record_file(self, key: CredentialKey) -> Path:
        return self.path / "records" / f"{key.slug}.json"

    def _attempts_file(self, key: CredentialKey) -> Path:
        return self.path / "attempts" / f"{key.slug}.json"

    @override
    def get_record(self, key: CredentialKey) -> CredentialRecord | None:
        file_path = self._record_file(key)
        try:
            data = load_json_file(file_path)
            return CredentialRecord.from_dict(data) if data is not None else None
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Failed to read credential record ({key}): {e}", cause=e) from e

    @override
    def put_record(self, key: CredentialKey, record: CredentialRecord) -> None:
        file_path = self._record_file(key)
        try:
            with self._locks.hold(("record", key)):
                save_json_file(record.to_dict(), file_path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write credential record ({key}): {e}", cause=e) from e

    @override
    def append_attempt(self, key: CredentialKey, entry: AttemptEntry) -> None:
        with self._locks.hold(("attempts", key)):
            entries = self._read_attempts(key)
            entries.append(entry)
            self._write_attempts(key, entries)

    @override
    def list_attempts(self, key: CredentialKey, since: float) -> list[AttemptEntry]:
        with self._locks.hold(("attempts", key)):
            return [e for e in self._read_attempts(key) if e.timestamp >= since]

    @override
    def prune_attempts(self, key: CredentialKey, before: float) -> None:
        with self._locks.hold(("attempts", key)):
            entries = self._read_attempts(key)
            kept = [e for e in entries if e.timestamp >= before]
            if len(kept) != len(entries):
                logger.debug(f"{key} | Store | Pruned {len(entries) - len(kept)} attempt(s)")
                self._write_attempts(key, kept)

    def _read_attempts(self, key: CredentialKey) -> list[AttemptEntry]:
        try:
            data = load_json_file(self._attempts_file(key)) or []
            return [AttemptEntry.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreError(f"Failed to read attempt log ({key}): {e}", cause=e) from e

    def _write_attempts(self, key: CredentialKey, entries: list[AttemptEntry]) -> None:
        try:
            save_json_file([e.to_dict() for e in entries], self._attempts_file(key))
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write attempt log ({key}): {e}", cause=e) from e


# =============================================================================
# Helper Functions
# =============================================================================


def create_store(config: StoreConfig | None = None) -> Store:
    """
    Create a Store from configuration.

    Args:
        config: Optional StoreConfig. If None, uses CREDKIT.config.store.

    Returns:
        InMemoryStore for backend "memory", JsonFileStore for backend "file".

    Example:
        >>> from credkit import CREDKIT
        >>> CREDKIT.configure(store={"backend": "file", "path": "/var/lib/app/credkit"})
        >>> store = create_store()
    """
    if config is None:
        from credkit._config import CREDKIT

        config = CREDKIT.config.store

    if config.backend == "file":
        return JsonFileStore(config.path)
    return InMemoryStore()
