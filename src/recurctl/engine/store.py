# src/recurctl/engine/store.py

"""
Record storage.

The engine talks to storage through four capabilities:

    get(collection, id)          -> record | None
    put(collection, id, record)  full overwrite, last writer wins
    delete(collection, id)
    transact(fn)                 atomic read-modify-write

plus `scan(collection)` for listing.

Transactions are optimistic: every committed write bumps a per-record
version, and a transaction whose read set changed before commit raises
ConcurrencyConflict. Retrying is the caller's decision. A commit is
all-or-nothing: if a write fails midway, the records already written
are restored before the error propagates.

Two backends are provided:
- MemoryStore: dictionaries, for tests and embedding;
- YamlStore: one YAML file per record under <root>/<collection>/<id>.yml.

Records are plain dicts of YAML-safe values. Returned records carry
their current `version`; a `version` key passed to put() is ignored.
"""

from __future__ import annotations

import copy
import logging
import os
import re
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Final, Iterator, Optional, TypeVar

from .ops import render_yaml
from .parse import ParseError, parse_yaml

logger = logging.getLogger(__name__)

T = TypeVar("T")

Record = dict[str, Any]
Key = tuple[str, str]


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class StorageError(Exception):
    """
    Base class for storage failures.

    `code` classifies the failure: "unavailable", "timeout",
    "permission-denied", "not-found", "aborted", ...
    """

    default_code = "unknown"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class TransientStorageError(StorageError):
    """Temporary failure; safe to retry."""

    default_code = "unavailable"


class PermissionDeniedError(StorageError):
    default_code = "permission-denied"


class NotFoundError(StorageError):
    """A referenced series or instance does not exist (any more)."""

    default_code = "not-found"


class ConcurrencyConflict(StorageError):
    """A transaction observed an interleaved write to its read set."""

    default_code = "aborted"


class OperationCancelled(Exception):
    """
    A long-running operation was interrupted by its cancel event or deadline.
    """

    def __init__(self, message: str, completed: int = 0) -> None:
        super().__init__(message)
        self.completed = completed


# Failure codes worth another attempt; every other code surfaces at once.
RETRYABLE_CODES: Final[frozenset[str]] = frozenset({"unavailable", "timeout"})


# ---------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------

def retry_operation(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run `operation`, retrying transient storage failures.

    Delays grow exponentially (base, 2*base, 4*base ...). Permission
    and not-found failures, conflicts and non-storage errors surface
    immediately; a transient failure surfaces once attempts run out.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(attempts):
        try:
            return operation()
        except StorageError as e:
            if e.code not in RETRYABLE_CODES or attempt == attempts - 1:
                raise

            delay = base_delay * (2 ** attempt)
            logger.warning(
                "storage %s, retry %d/%d after %.1fs",
                e.code,
                attempt + 1,
                attempts,
                delay,
            )
            sleep(delay)

    raise AssertionError("unreachable")


# ---------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------

class Transaction:
    """
    Buffered read-modify-write against one store.

    Reads see the transaction's own pending writes. Nothing is visible
    to other readers until the store commits.
    """

    def __init__(self, store: "BaseStore") -> None:
        self._store = store
        self._reads: dict[Key, int] = {}
        self._writes: dict[Key, Optional[Record]] = {}

    def get(self, collection: str, record_id: str) -> Optional[Record]:
        key = (collection, record_id)

        if key in self._writes:
            pending = self._writes[key]
            return copy.deepcopy(pending) if pending is not None else None

        version, record = self._store._read(collection, record_id)
        self._reads.setdefault(key, version)
        return record

    def put(self, collection: str, record_id: str, record: Record) -> None:
        self._store._check_id(record_id)
        data = copy.deepcopy(record)
        data.pop("version", None)
        self._writes[(collection, record_id)] = data

    def delete(self, collection: str, record_id: str) -> None:
        self._writes[(collection, record_id)] = None

    @property
    def read_set(self) -> dict[Key, int]:
        return dict(self._reads)

    @property
    def write_set(self) -> dict[Key, Optional[Record]]:
        return dict(self._writes)


# ---------------------------------------------------------------------
# Base store
# ---------------------------------------------------------------------

class BaseStore:
    """
    Versioned record store.

    Subclasses implement the raw primitives (_load, _save, _remove,
    _ids); locking, versioning and commit validation live here.
    """

    _ID_RE = re.compile(r"^[A-Za-z0-9_.\-]+$")

    def __init__(self) -> None:
        self._lock = threading.RLock()

    # -----------------------------------------------------------------
    # Raw primitives
    # -----------------------------------------------------------------

    def _load(self, collection: str, record_id: str) -> Optional[tuple[int, Record]]:
        raise NotImplementedError

    def _save(self, collection: str, record_id: str, version: int, record: Record) -> None:
        raise NotImplementedError

    def _remove(self, collection: str, record_id: str) -> None:
        raise NotImplementedError

    def _ids(self, collection: str) -> list[str]:
        raise NotImplementedError

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def get(self, collection: str, record_id: str) -> Optional[Record]:
        return self._read(collection, record_id)[1]

    def put(self, collection: str, record_id: str, record: Record) -> None:
        self._check_id(record_id)
        data = copy.deepcopy(record)
        data.pop("version", None)

        with self._lock:
            current = self._load(collection, record_id)
            version = current[0] if current else 0
            self._save(collection, record_id, version + 1, data)

    def delete(self, collection: str, record_id: str) -> None:
        with self._lock:
            if self._load(collection, record_id) is not None:
                self._remove(collection, record_id)

    def ids(self, collection: str) -> list[str]:
        with self._lock:
            return sorted(self._ids(collection))

    def scan(self, collection: str) -> Iterator[tuple[str, Record]]:
        """
        Yield (id, record) pairs of a collection, sorted by id.

        Records deleted while scanning are skipped.
        """
        for record_id in self.ids(collection):
            record = self.get(collection, record_id)
            if record is not None:
                yield record_id, record

    def transact(self, fn: Callable[[Transaction], T]) -> T:
        """
        Run `fn` against a fresh transaction and commit its writes atomically.

        Raises ConcurrencyConflict if any record read by `fn` changed
        in the meantime; nothing is written in that case.
        """
        txn = Transaction(self)
        result = fn(txn)
        self._commit(txn)
        return result

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _read(self, collection: str, record_id: str) -> tuple[int, Optional[Record]]:
        with self._lock:
            loaded = self._load(collection, record_id)

        if loaded is None:
            return 0, None

        version, record = loaded
        data = copy.deepcopy(record)
        data["version"] = version
        return version, data

    def _commit(self, txn: Transaction) -> None:
        with self._lock:
            for (collection, record_id), seen in txn.read_set.items():
                current = self._load(collection, record_id)
                version = current[0] if current else 0
                if version != seen:
                    raise ConcurrencyConflict(
                        f"{collection}/{record_id} changed "
                        f"(read version {seen}, now {version})"
                    )

            writes = txn.write_set
            before = {key: self._load(*key) for key in writes}
            applied: list[Key] = []

            try:
                for key, record in writes.items():
                    current = before[key]
                    if record is None:
                        if current is not None:
                            self._remove(*key)
                    else:
                        version = current[0] if current else 0
                        self._save(*key, version + 1, record)
                    applied.append(key)
            except Exception:
                self._rollback(before, applied)
                raise

    def _rollback(self, before: dict[Key, Optional[tuple[int, Record]]], applied: list[Key]) -> None:
        """
        Put every record touched by a failed commit back as it was.

        The write that failed is restored too: it may have landed before
        raising.
        """
        failed = [k for k in before if k not in applied][:1]

        for key in reversed(applied + failed):
            previous = before[key]
            try:
                if previous is None:
                    self._remove(*key)
                else:
                    self._save(*key, *previous)
            except StorageError:
                logger.error("rollback of %s/%s failed", *key)
                raise

    def _check_id(self, record_id: str) -> None:
        if not record_id or not self._ID_RE.match(record_id):
            raise StorageError(f"Invalid record id: {record_id!r}", code="invalid-argument")


# ---------------------------------------------------------------------
# Memory backend
# ---------------------------------------------------------------------

class MemoryStore(BaseStore):
    """
    In-process store backed by dictionaries.
    """

    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict[str, tuple[int, Record]]] = {}

    def _load(self, collection: str, record_id: str) -> Optional[tuple[int, Record]]:
        return self._data.get(collection, {}).get(record_id)

    def _save(self, collection: str, record_id: str, version: int, record: Record) -> None:
        self._data.setdefault(collection, {})[record_id] = (version, copy.deepcopy(record))

    def _remove(self, collection: str, record_id: str) -> None:
        self._data.get(collection, {}).pop(record_id, None)

    def _ids(self, collection: str) -> list[str]:
        return list(self._data.get(collection, {}))


# ---------------------------------------------------------------------
# YAML file backend
# ---------------------------------------------------------------------

YAML_SUFFIX: Final[str] = ".yml"


class YamlStore(BaseStore):
    """
    One YAML document per record: <root>/<collection>/<id>.yml.

    Writes go through a temporary file and os.replace so a reader never
    sees a half-written record. Locking is per process.
    """

    def __init__(self, root: str | Path) -> None:
        super().__init__()
        self.root = Path(root)

    def _path(self, collection: str, record_id: str) -> Path:
        return self.root / collection / f"{record_id}{YAML_SUFFIX}"

    def _load(self, collection: str, record_id: str) -> Optional[tuple[int, Record]]:
        path = self._path(collection, record_id)

        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise _os_error(path, e) from e

        data = parse_yaml(text, path=str(path))
        version = data.pop("version", 0)
        if isinstance(version, bool) or not isinstance(version, int):
            raise ParseError(str(path), "Key 'version' must be an integer")
        return version, data

    def _save(self, collection: str, record_id: str, version: int, record: Record) -> None:
        path = self._path(collection, record_id)
        text = render_yaml({**record, "version": version})

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=YAML_SUFFIX)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(text)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise _os_error(path, e) from e

    def _remove(self, collection: str, record_id: str) -> None:
        path = self._path(collection, record_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise _os_error(path, e) from e

    def _ids(self, collection: str) -> list[str]:
        d = self.root / collection
        if not d.is_dir():
            return []

        try:
            return [
                p.name[: -len(YAML_SUFFIX)]
                for p in d.iterdir()
                if p.is_file() and p.name.endswith(YAML_SUFFIX) and not p.name.startswith(".")
            ]
        except OSError as e:
            raise _os_error(d, e) from e


def _os_error(path: Path, e: OSError) -> StorageError:
    if isinstance(e, PermissionError):
        return PermissionDeniedError(f"{path}: permission denied")
    if isinstance(e, TimeoutError):
        return TransientStorageError(f"{path}: {e}", code="timeout")
    return TransientStorageError(f"{path}: {e}")
