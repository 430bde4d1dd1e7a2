"""
Book inventory: catalogue edits that keep 0 <= available <= total.
"""

import logging
from collections import Counter
from typing import Dict, List

from clock import SystemClock
from errors import ConflictError, InvalidQuantityError, NotFoundError
from schemas import Book, BookIn, TrendingBook
from store import BOOKS, BORROW_RECORDS, FAVORITES, LibraryStore, is_valid_id

logger = logging.getLogger(__name__)


class InventoryService:
    def __init__(self, store: LibraryStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()

    def list_books(self) -> List[Book]:
        books = [Book.from_document(doc) for doc in self.store.find(BOOKS)]
        return sorted(books, key=lambda b: b.title.lower())

    def get_book(self, book_id: str) -> Book:
        doc = self.store.get(BOOKS, book_id) if is_valid_id(book_id) else None
        if doc is None:
            raise NotFoundError("Book not found")
        return Book.from_document(doc)

    def add_book(self, payload: BookIn) -> str:
        book = Book(
            **payload.model_dump(),
            available_quantity=payload.total_quantity,
            date_added=self.clock.now(),
        )
        with self.store.transaction() as txn:
            if txn.count(BOOKS, isbn=book.isbn):
                raise ConflictError("Book with this ISBN already exists")
            book_id = txn.insert(BOOKS, book.to_document())
        logger.info("Book %s added (%s, %d copies)", book_id, book.isbn, book.total_quantity)
        return book_id

    def update_book(self, book_id: str, payload: BookIn) -> int:
        """Replace a book's details; available copies follow the new total.

        Returns the recomputed available quantity.
        """
        if not is_valid_id(book_id):
            raise NotFoundError("Book not found")
        with self.store.transaction() as txn:
            current = txn.lock(BOOKS, book_id)
            if current is None:
                raise NotFoundError("Book not found")
            on_loan = txn.count(BORROW_RECORDS, book_id=book_id, is_returned=False)
            if payload.total_quantity < on_loan:
                raise InvalidQuantityError(
                    f"Cannot set total quantity to {payload.total_quantity}. "
                    f"{on_loan} books are currently borrowed."
                )
            if payload.isbn != current["isbn"] and txn.count(BOOKS, isbn=payload.isbn):
                raise ConflictError("Book with this ISBN already exists")
            available = payload.total_quantity - on_loan
            txn.update(
                BOOKS,
                book_id,
                fields=dict(payload.model_dump(), available_quantity=available),
            )
        logger.info("Book %s updated (total %d, available %d)", book_id, payload.total_quantity, available)
        return available

    def delete_book(self, book_id: str) -> None:
        if not is_valid_id(book_id):
            raise NotFoundError("Book not found")
        with self.store.transaction() as txn:
            if txn.lock(BOOKS, book_id) is None:
                raise NotFoundError("Book not found")
            if txn.count(BORROW_RECORDS, book_id=book_id):
                raise ConflictError("Book has borrow records and cannot be deleted")
            for favorite in txn.find(FAVORITES, book_id=book_id):
                txn.delete(FAVORITES, favorite["_id"])
            txn.delete(BOOKS, book_id)
        logger.info("Book %s deleted", book_id)

    def loan_counts(self) -> Dict[str, int]:
        return Counter(loan["book_id"] for loan in self.store.find(BORROW_RECORDS))

    def trending_books(self, limit: int = 10) -> List[TrendingBook]:
        counts = self.loan_counts()
        books = [
            TrendingBook.from_document(doc, borrow_count=counts.get(doc["_id"], 0))
            for doc in self.store.find(BOOKS)
        ]
        books.sort(key=lambda b: (-b.borrow_count, b.title.lower()))
        return books[:limit]
