"""
MongoDB persistence for the library.

Uses multi-document transactions, so the server must run as a replica set
or sharded cluster. Connection settings come from DATABASE_URL and
DATABASE_NAME.
"""

import logging
import time
from contextlib import contextmanager
from typing import Iterator

from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo.read_concern import ReadConcern
from pymongo.write_concern import WriteConcern

from errors import ConflictError, DatabaseError
from settings import Settings
from store import (
    BOOKS,
    BORROW_RECORDS,
    FAVORITES,
    PENALTY_RECORDS,
    STUDENTS,
    InMemoryLibraryStore,
    LibraryStore,
    Transaction,
    new_id,
)

logger = logging.getLogger(__name__)

# Bumped by `lock` so the transaction holds the document's write lock.
LOCK_FIELD = "_lock"

LOCK_RETRY_DELAY = 0.01
LOCK_RETRY_MAX_DELAY = 0.2


def _clean(doc):
    if doc is not None:
        doc.pop(LOCK_FIELD, None)
    return doc


def _is_write_conflict(error: PyMongoError) -> bool:
    return error.has_error_label("TransientTransactionError")


class MongoTransaction(Transaction):
    """Statements of one MongoDB transaction.

    The server does not queue writers on a locked document, it aborts the
    later one with a write conflict. When that happens to the opening `lock`
    nothing has run yet, so the transaction is restarted until the holder
    commits or `lock_timeout` runs out, which amounts to waiting for the lock.
    """

    def __init__(self, db, session, lock_timeout: float = 5.0, options=None):
        self.db = db
        self.session = session
        self.lock_timeout = lock_timeout
        self.options = options or {}
        self.started = False

    def lock(self, collection, doc_id):
        deadline = time.monotonic() + self.lock_timeout
        delay = LOCK_RETRY_DELAY
        while True:
            try:
                doc = self.db[collection].find_one_and_update(
                    {"_id": doc_id},
                    {"$inc": {LOCK_FIELD: 1}},
                    session=self.session,
                    return_document=ReturnDocument.AFTER,
                )
                break
            except PyMongoError as e:
                if self.started or not _is_write_conflict(e):
                    raise
                if time.monotonic() + delay > deadline:
                    logger.exception("Lock wait timeout on %s/%s", collection, doc_id)
                    raise DatabaseError("Timed out waiting for a database lock, please retry") from e
                self.session.abort_transaction()
                time.sleep(delay)
                delay = min(delay * 2, LOCK_RETRY_MAX_DELAY)
                self.session.start_transaction(**self.options)
        self.started = True
        return _clean(doc)

    def get(self, collection, doc_id):
        self.started = True
        return _clean(self.db[collection].find_one({"_id": doc_id}, session=self.session))

    def find(self, collection, **criteria):
        self.started = True
        return [_clean(doc) for doc in self.db[collection].find(criteria, session=self.session)]

    def count(self, collection, **criteria):
        self.started = True
        return self.db[collection].count_documents(criteria, session=self.session)

    def insert(self, collection, doc):
        self.started = True
        doc = dict(doc)
        doc.setdefault("_id", new_id())
        self.db[collection].insert_one(doc, session=self.session)
        return doc["_id"]

    def update(self, collection, doc_id, fields=None, increments=None):
        self.started = True
        change = {}
        if fields:
            change["$set"] = fields
        if increments:
            change["$inc"] = increments
        if change:
            self.db[collection].update_one({"_id": doc_id}, change, session=self.session)

    def update_many(self, collection, criteria, fields):
        self.started = True
        result = self.db[collection].update_many(criteria, {"$set": fields}, session=self.session)
        return result.modified_count

    def delete(self, collection, doc_id):
        self.started = True
        self.db[collection].delete_one({"_id": doc_id}, session=self.session)


class MongoLibraryStore(LibraryStore):
    """Library store backed by a MongoDB database.

    A write conflict after the opening lock aborts the transaction and
    surfaces as DatabaseError; the caller may retry.
    """

    name = "mongodb"

    def __init__(self, client: MongoClient, database_name: str, lock_timeout: float = 5.0):
        self.client = client
        self.db = client[database_name]
        self.lock_timeout = lock_timeout
        self.transaction_options = dict(
            read_concern=ReadConcern("snapshot"),
            write_concern=WriteConcern("majority"),
        )

    def prepare(self):
        try:
            self.db[BOOKS].create_index([("isbn", ASCENDING)], unique=True)
            self.db[STUDENTS].create_index([("college_id", ASCENDING)], unique=True)
            self.db[STUDENTS].create_index([("email", ASCENDING)], unique=True)
            self.db[BORROW_RECORDS].create_index([("student_id", ASCENDING), ("is_returned", ASCENDING)])
            self.db[BORROW_RECORDS].create_index([("book_id", ASCENDING)])
            self.db[BORROW_RECORDS].create_index([("borrow_date", DESCENDING)])
            self.db[PENALTY_RECORDS].create_index([("student_id", ASCENDING), ("is_paid", ASCENDING)])
            self.db[FAVORITES].create_index(
                [("student_id", ASCENDING), ("book_id", ASCENDING)], unique=True
            )
        except PyMongoError as e:
            logger.exception("Index creation failed")
            raise DatabaseError("Database not available") from e

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        try:
            with self.client.start_session() as session:
                session.start_transaction(**self.transaction_options)
                txn = MongoTransaction(self.db, session, self.lock_timeout, self.transaction_options)
                try:
                    yield txn
                except BaseException:
                    if session.in_transaction:
                        session.abort_transaction()
                    raise
                session.commit_transaction()
        except DuplicateKeyError as e:
            raise ConflictError("A record with the same unique key already exists") from e
        except PyMongoError as e:
            logger.exception("Transaction rolled back")
            raise DatabaseError("Database error, please retry") from e

    def get(self, collection, doc_id):
        try:
            return _clean(self.db[collection].find_one({"_id": doc_id}))
        except PyMongoError as e:
            logger.exception("Read from %s failed", collection)
            raise DatabaseError("Database error") from e

    def find(self, collection, **criteria):
        try:
            return [_clean(doc) for doc in self.db[collection].find(criteria)]
        except PyMongoError as e:
            logger.exception("Read from %s failed", collection)
            raise DatabaseError("Database error") from e

    def ping(self):
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError:
            return False


def get_store(settings: Settings) -> LibraryStore:
    if not settings.database_url:
        logger.warning("DATABASE_URL is not set, falling back to the in-memory store")
        return InMemoryLibraryStore(lock_timeout=settings.lock_timeout_seconds)
    client = MongoClient(settings.database_url, tz_aware=True)
    return MongoLibraryStore(client, settings.database_name, settings.lock_timeout_seconds)
