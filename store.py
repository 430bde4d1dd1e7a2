"""
Storage contract for the library and an in-memory implementation.

A LibraryStore hands out transactions. Inside a transaction, `lock` takes a
pessimistic write lock on one document that is held until the transaction
ends; every write also locks the document it touches. Leaving the
`transaction()` block normally commits, raising out of it rolls back.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Tuple

from bson import ObjectId

from errors import ConflictError, DatabaseError

logger = logging.getLogger(__name__)

BOOKS = "books"
STUDENTS = "students"
BORROW_RECORDS = "borrow_records"
PENALTY_RECORDS = "penalty_records"
FAVORITES = "favorites"

# Fields (or field groups) that must be unique within a collection.
UNIQUE_KEYS = {
    BOOKS: [("isbn",)],
    STUDENTS: [("college_id",), ("email",)],
    FAVORITES: [("student_id", "book_id")],
}


def new_id() -> str:
    return str(ObjectId())


def is_valid_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def matches(doc: Dict[str, Any], criteria: Dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in criteria.items())


class Transaction(ABC):
    @abstractmethod
    def lock(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Write-lock a document until the transaction ends.

        Returns the current document, or None when it does not exist.
        Raises DatabaseError when the lock cannot be taken in time.
        """

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def find(self, collection: str, **criteria: Any) -> List[Dict[str, Any]]:
        ...

    def count(self, collection: str, **criteria: Any) -> int:
        return len(self.find(collection, **criteria))

    @abstractmethod
    def insert(self, collection: str, doc: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    def update(
        self,
        collection: str,
        doc_id: str,
        fields: Optional[Dict[str, Any]] = None,
        increments: Optional[Dict[str, int]] = None,
    ) -> None:
        ...

    @abstractmethod
    def update_many(self, collection: str, criteria: Dict[str, Any], fields: Dict[str, Any]) -> int:
        ...

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        ...


class LibraryStore(ABC):
    name = "store"

    @abstractmethod
    def transaction(self) -> ContextManager[Transaction]:
        ...

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def find(self, collection: str, **criteria: Any) -> List[Dict[str, Any]]:
        ...

    def prepare(self) -> None:
        """Create indexes or other one-off structures. No-op by default."""

    def ping(self) -> bool:
        return True


_DELETED = object()


class _MemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryLibraryStore"):
        self._store = store
        self._writes: Dict[Tuple[str, str], Any] = {}
        self._held: List[Tuple[str, str]] = []

    def lock(self, collection, doc_id):
        key = (collection, doc_id)
        if key not in self._held:
            if not self._store._acquire_row(key):
                logger.error("Lock wait timeout on %s/%s", collection, doc_id)
                raise DatabaseError("Timed out waiting for a database lock, please retry")
            self._held.append(key)
        return self.get(collection, doc_id)

    def get(self, collection, doc_id):
        key = (collection, doc_id)
        if key in self._writes:
            doc = self._writes[key]
            return None if doc is _DELETED else copy.deepcopy(doc)
        return self._store.get(collection, doc_id)

    def find(self, collection, **criteria):
        with self._store._mutex:
            docs = dict(self._store._data[collection])
        for (coll, doc_id), doc in self._writes.items():
            if coll == collection:
                docs[doc_id] = doc
        return [
            copy.deepcopy(doc)
            for doc in docs.values()
            if doc is not _DELETED and matches(doc, criteria)
        ]

    def insert(self, collection, doc):
        doc = copy.deepcopy(doc)
        doc_id = doc.setdefault("_id", new_id())
        self._writes[(collection, doc_id)] = doc
        return doc_id

    def update(self, collection, doc_id, fields=None, increments=None):
        doc = self.lock(collection, doc_id)
        if doc is None:
            return
        doc.update(copy.deepcopy(fields or {}))
        for name, delta in (increments or {}).items():
            doc[name] = doc.get(name, 0) + delta
        self._writes[(collection, doc_id)] = doc

    def update_many(self, collection, criteria, fields):
        docs = self.find(collection, **criteria)
        for doc in docs:
            self.update(collection, doc["_id"], fields=fields)
        return len(docs)

    def delete(self, collection, doc_id):
        if self.lock(collection, doc_id) is not None:
            self._writes[(collection, doc_id)] = _DELETED

    def commit(self) -> None:
        with self._store._mutex:
            self._store._check_unique(self._writes)
            for (collection, doc_id), doc in self._writes.items():
                if doc is _DELETED:
                    self._store._data[collection].pop(doc_id, None)
                else:
                    self._store._data[collection][doc_id] = doc
        self._writes = {}

    def rollback(self) -> None:
        self._writes = {}

    def release(self) -> None:
        while self._held:
            self._store._release_row(self._held.pop(), acquired=True)


class InMemoryLibraryStore(LibraryStore):
    """Process-local store with row locks, write overlays and atomic commit.

    Writes made inside a transaction stay private to it until commit, which
    applies them all at once under the store mutex.
    """

    name = "memory"

    def __init__(self, lock_timeout: float = 5.0):
        self.lock_timeout = lock_timeout
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._mutex = threading.RLock()
        # key -> [lock, number of transactions holding or waiting for it]
        self._row_locks: Dict[Tuple[str, str], List[Any]] = {}

    def _acquire_row(self, key: Tuple[str, str]) -> bool:
        with self._mutex:
            entry = self._row_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        if entry[0].acquire(timeout=self.lock_timeout):
            return True
        self._release_row(key, acquired=False)
        return False

    def _release_row(self, key: Tuple[str, str], acquired: bool) -> None:
        with self._mutex:
            entry = self._row_locks[key]
            if acquired:
                entry[0].release()
            entry[1] -= 1
            if entry[1] == 0:
                del self._row_locks[key]

    def _check_unique(self, writes: Dict[Tuple[str, str], Any]) -> None:
        touched = {collection for collection, _ in writes}
        for collection in touched & set(UNIQUE_KEYS):
            merged = dict(self._data[collection])
            written = set()
            for (coll, doc_id), doc in writes.items():
                if coll != collection:
                    continue
                if doc is _DELETED:
                    merged.pop(doc_id, None)
                else:
                    merged[doc_id] = doc
                    written.add(doc_id)
            for fields in UNIQUE_KEYS[collection]:
                seen = {}
                for doc_id, doc in merged.items():
                    value = tuple(doc.get(f) for f in fields)
                    if None in value:
                        continue
                    other = seen.setdefault(value, doc_id)
                    if other != doc_id and (doc_id in written or other in written):
                        raise ConflictError(
                            "A record with this %s already exists" % ", ".join(fields)
                        )

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        txn = _MemoryTransaction(self)
        try:
            yield txn
        except BaseException:
            txn.rollback()
            raise
        else:
            txn.commit()
        finally:
            txn.release()

    def get(self, collection, doc_id):
        with self._mutex:
            doc = self._data[collection].get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def find(self, collection, **criteria):
        with self._mutex:
            return [
                copy.deepcopy(doc)
                for doc in self._data[collection].values()
                if matches(doc, criteria)
            ]
