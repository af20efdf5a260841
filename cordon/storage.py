"""
Cordon JSON document storage.

Both persisted documents (approvals and blocked attempts) are small JSON
files in the quarantine directory. Every read-modify-write runs inside
``JsonDocument.transaction()``, which holds an in-process lock for the path
and an exclusive ``fcntl`` lock file so several worker processes can share
the directory. Writes go to a temp file that is renamed over the original.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator

from cordon.errors import StoreIOError

logger = logging.getLogger(__name__)

_path_locks: Dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    """Return the process-wide lock for a document path."""
    key = str(path.resolve())
    with _path_locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _path_locks[key] = lock
        return lock


class JsonDocument:
    """A JSON document with serialized read-modify-write access."""

    def __init__(self, path: Path, default_factory: Callable[[], Dict[str, Any]]):
        self.path = Path(path)
        self._default_factory = default_factory

    @property
    def lock_path(self) -> Path:
        return self.path.parent / f".{self.path.name}.lock"

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold both the in-process lock and the cross-process file lock."""
        with _lock_for(self.path):
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                lock_fd = open(self.lock_path, "w")
            except OSError as e:
                raise StoreIOError(f"Cannot open lock file {self.lock_path}: {e}") from e
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
                lock_fd.close()

    def _read(self) -> Dict[str, Any]:
        """Read the document. A missing file is the empty initial state."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return self._default_factory()
        except UnicodeDecodeError as e:
            raise StoreIOError(f"Corrupt document {self.path}: {e}") from e
        except OSError as e:
            raise StoreIOError(f"Cannot read {self.path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StoreIOError(f"Corrupt document {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise StoreIOError(f"Corrupt document {self.path}: expected an object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        """Write the document atomically via temp file + rename."""
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.stem}_tmp_",
                suffix=".json",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, str(self.path))
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise StoreIOError(f"Cannot write {self.path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

    def load(self) -> Dict[str, Any]:
        """Read a consistent snapshot of the document."""
        with self._exclusive():
            return self._read()

    @contextmanager
    def transaction(self) -> Iterator["Transaction"]:
        """
        Yield the current document for modification and write it back.

        The document is only written if the block marked the transaction
        dirty and exited without an exception; otherwise the file is left
        untouched.
        """
        with self._exclusive():
            txn = Transaction(self._read())
            yield txn
            if txn.dirty:
                self._write(txn.data)


class Transaction:
    """Mutable view of a document inside ``JsonDocument.transaction()``."""

    def __init__(self, data: Dict[str, Any]):
        self.data = data
        self.dirty = False

    def mark_dirty(self) -> None:
        self.dirty = True
