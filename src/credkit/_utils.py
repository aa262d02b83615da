"""
Utility functions for the credkit package.

This module provides internal helpers used by the store, the rate limiter and
the renewal coordinator. These functions are not part of the public API and may
change without notice.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def identity_hash(user_secret: str) -> str:
    """
    Return a stable, non-reversible identity for a user secret.

    Example:
        >>> identity_hash("secret")[:12]
        '2bb80d537b1d'
    """
    return hashlib.sha256(user_secret.encode("utf-8")).hexdigest()


class KeyedLocks:
    """
    In-process mutex per key.

    Locks are created on first use and kept for the lifetime of the instance,
    which is bounded by the number of (user, service) keys in the process.

    Example:
        >>> locks = KeyedLocks()
        >>> with locks.hold(("user", "moon")):
        ...     ...
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self.get(key):
            yield


def save_json_file(data: Any, file_path: Path) -> None:
    """
    Atomically save data as JSON to the specified file path.

    The data is written to a temporary file in the same directory and then
    moved over the destination with `os.replace`, so readers never observe a
    partially written file.

    Args:
        data: JSON-serializable value.
        file_path: Destination path for the JSON file.

    Raises:
        OSError: If the file cannot be written.
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, mode="w", encoding="utf-8") as file:
            json.dump(data, file, indent=2, ensure_ascii=False)
            file.flush()
            os.fsync(file.fileno())
        os.replace(tmp_name, file_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def load_json_file(file_path: Path) -> Any | None:
    """
    Load JSON from the specified file path.

    Returns:
        The decoded value, or None if the file does not exist.

    Raises:
        OSError: If the file exists but cannot be read.
        ValueError: If the file does not contain valid JSON.
    """
    try:
        with file_path.open(mode="r", encoding="utf-8") as file:
            return json.load(file)
    except FileNotFoundError:
        return None
