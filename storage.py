from __future__ import annotations

import copy
import errno
import fcntl
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Document could not be opened, locked, decoded or written."""


class StorageConflict(StorageError):
    """Compare-and-swap kept losing against concurrent writers."""


@dataclass(frozen=True)
class Versioned:
    value: Any
    version: Optional[str]


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, indent=2)
    except (TypeError, ValueError) as e:
        raise StorageError(f"Unable to encode document: {e}") from e


def _loads(raw: str) -> Any:
    if not raw or not raw.strip():
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _digest(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _coerce(value: Any, default: Callable[[], Any]) -> Any:
    fresh = default()
    if value is None or not isinstance(value, type(fresh)):
        return fresh
    return value


# -------------------------
# Abstract store
# -------------------------
class DocumentStore:
    """JSON documents addressed by string keys, with compare-and-swap writes.

    Business code only talks to this interface, so the file backend can be
    swapped for an embedded or real database without touching it.
    """

    max_attempts = 20

    def read(self, key: str) -> Versioned:
        raise NotImplementedError

    def compare_and_swap(self, key: str, expected_version: Optional[str], value: Any) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        return self.read(key).version is not None

    def get(self, key: str, default: Any = None) -> Any:
        value = self.read(key).value
        return default if value is None else value

    def mutate(self, key: str, fn: Callable[[Any], Any], default: Callable[[], Any] = dict) -> Any:
        """Read-modify-write ``key``.

        ``fn`` receives a private copy of the document, mutates it in place and
        returns the caller's result. When ``fn`` raises nothing is written. A
        missing document, or one whose type differs from ``default()``, starts
        from ``default()``.
        """
        for _ in range(self.max_attempts):
            current = self.read(key)
            doc = _coerce(copy.deepcopy(current.value), default)
            result = fn(doc)
            if self.compare_and_swap(key, current.version, doc):
                return result
        raise StorageConflict(f"Too many concurrent updates on {key!r}")

    def put(self, key: str, value: Any) -> None:
        for _ in range(self.max_attempts):
            current = self.read(key)
            if self.compare_and_swap(key, current.version, value):
                return
        raise StorageConflict(f"Too many concurrent updates on {key!r}")


# -------------------------
# In-memory backend
# -------------------------
class MemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        self._docs: Dict[str, Tuple[str, str]] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> Versioned:
        with self._lock:
            row = self._docs.get(key)
        if row is None:
            return Versioned(None, None)
        raw, version = row
        return Versioned(_loads(raw), version)

    def compare_and_swap(self, key: str, expected_version: Optional[str], value: Any) -> bool:
        raw = _dumps(value)
        with self._lock:
            row = self._docs.get(key)
            current = row[1] if row else None
            if current != expected_version:
                return False
            self._docs[key] = (raw, _digest(raw))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._docs.pop(key, None)


# -------------------------
# File backend (flock)
# -------------------------
class FileDocumentStore(DocumentStore):
    """One JSON file per key under ``root``, guarded by ``fcntl.flock``.

    ``mutate`` keeps an exclusive lock for the whole read-modify-write cycle,
    so every update of a document is serialized across processes.
    """

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def path_for(self, key: str) -> str:
        parts = [p for p in str(key or "").replace("\\", "/").split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise StorageError(f"Invalid document key {key!r}")
        return os.path.join(self.root, *parts) + ".json"

    def _open_locked(self, key: str, create: bool):
        path = self.path_for(key)
        if create:
            os.makedirs(os.path.dirname(path), exist_ok=True)
        flags = os.O_RDWR | (os.O_CREAT if create else 0)
        try:
            fd = os.open(path, flags, 0o644)
        except FileNotFoundError:
            return None, path
        except OSError as e:
            raise StorageError(f"Unable to open {path}: {e}") from e
        fh = os.fdopen(fd, "r+", encoding="utf-8")
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
        except OSError as e:
            fh.close()
            raise StorageError(f"Unable to lock {path}: {e}") from e
        return fh, path

    @staticmethod
    def _read_locked(fh) -> Tuple[str, Optional[str]]:
        fh.seek(0)
        raw = fh.read()
        return raw, (_digest(raw) if raw else None)

    @staticmethod
    def _write_locked(fh, value: Any) -> None:
        raw = _dumps(value)
        fh.seek(0)
        fh.truncate(0)
        fh.write(raw)
        fh.flush()
        os.fsync(fh.fileno())

    @staticmethod
    def _close(fh) -> None:
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()

    def read(self, key: str) -> Versioned:
        path = self.path_for(key)
        if not os.path.isfile(path):
            return Versioned(None, None)
        fh, _ = self._open_locked(key, create=False)
        if fh is None:
            return Versioned(None, None)
        try:
            raw, version = self._read_locked(fh)
        finally:
            self._close(fh)
        return Versioned(_loads(raw), version)

    def compare_and_swap(self, key: str, expected_version: Optional[str], value: Any) -> bool:
        fh, _ = self._open_locked(key, create=True)
        try:
            _, version = self._read_locked(fh)
            if version != expected_version:
                return False
            self._write_locked(fh, value)
            return True
        finally:
            self._close(fh)

    def mutate(self, key: str, fn: Callable[[Any], Any], default: Callable[[], Any] = dict) -> Any:
        fh, path = self._open_locked(key, create=True)
        try:
            raw, _ = self._read_locked(fh)
            loaded = _loads(raw)
            if loaded is None and raw.strip():
                logger.warning("Discarding unreadable document %s", path)
            doc = _coerce(loaded, default)
            result = fn(doc)
            self._write_locked(fh, doc)
            return result
        finally:
            self._close(fh)

    def delete(self, key: str) -> None:
        path = self.path_for(key)
        try:
            os.remove(path)
        except OSError as e:
            if e.errno != errno.ENOENT:
                raise StorageError(f"Unable to delete {path}: {e}") from e
