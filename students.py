"""
Student accounts and favourites.
"""

import logging
from collections import Counter
from typing import List

from clock import SystemClock
from errors import ConflictError, NotFoundError
from schemas import Book, Favorite, Student, StudentIn, StudentSummary
from store import BOOKS, BORROW_RECORDS, FAVORITES, STUDENTS, LibraryStore, is_valid_id

logger = logging.getLogger(__name__)


class StudentService:
    def __init__(self, store: LibraryStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()

    def register(self, payload: StudentIn) -> str:
        student = Student(**payload.model_dump(), registration_date=self.clock.now())
        with self.store.transaction() as txn:
            if txn.count(STUDENTS, college_id=student.college_id):
                raise ConflictError("A student with this college ID already exists")
            if txn.count(STUDENTS, email=student.email):
                raise ConflictError("A student with this email already exists")
            student_id = txn.insert(STUDENTS, student.to_document())
        logger.info("Student %s registered (%s)", student_id, student.college_id)
        return student_id

    def get(self, student_id: str) -> Student:
        doc = self.store.get(STUDENTS, student_id) if is_valid_id(student_id) else None
        if doc is None:
            raise NotFoundError("Student not found")
        return Student.from_document(doc)

    def list_students(self) -> List[StudentSummary]:
        open_counts = Counter(
            loan["student_id"] for loan in self.store.find(BORROW_RECORDS, is_returned=False)
        )
        students = [
            StudentSummary.from_document(doc, current_borrowed=open_counts.get(doc["_id"], 0))
            for doc in self.store.find(STUDENTS)
        ]
        students.sort(key=lambda s: s.registration_date, reverse=True)
        return students

    def toggle_status(self, student_id: str) -> bool:
        if not is_valid_id(student_id):
            raise NotFoundError("Student not found")
        with self.store.transaction() as txn:
            student = txn.lock(STUDENTS, student_id)
            if student is None:
                raise NotFoundError("Student not found")
            active = not student["is_active"]
            txn.update(STUDENTS, student_id, fields={"is_active": active})
        logger.info("Student %s is now %s", student_id, "active" if active else "inactive")
        return active

    def toggle_favorite(self, student_id: str, book_id: str) -> str:
        """Add the book to the student's favourites, or remove it if present."""
        if not is_valid_id(book_id):
            raise NotFoundError("Book not found")
        with self.store.transaction() as txn:
            existing = txn.find(FAVORITES, student_id=student_id, book_id=book_id)
            if existing:
                txn.delete(FAVORITES, existing[0]["_id"])
                action = "removed"
            else:
                if txn.get(BOOKS, book_id) is None:
                    raise NotFoundError("Book not found")
                favorite = Favorite(student_id=student_id, book_id=book_id, created_at=self.clock.now())
                txn.insert(FAVORITES, favorite.to_document())
                action = "added"
        logger.info("Book %s %s favourites of student %s", book_id,
                    "added to" if action == "added" else "removed from", student_id)
        return action

    def list_favorites(self, student_id: str) -> List[Book]:
        favorites = sorted(
            self.store.find(FAVORITES, student_id=student_id),
            key=lambda f: f["created_at"],
            reverse=True,
        )
        books = []
        for favorite in favorites:
            doc = self.store.get(BOOKS, favorite["book_id"])
            if doc is not None:
                books.append(Book.from_document(doc))
        return books
