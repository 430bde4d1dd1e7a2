"""
Borrow and return workflows.

Each operation is one linear sequence inside a single store transaction.
The book row is locked first, business rules are checked before any write,
and any exception leaves the transaction uncommitted, so a failed call
never leaves partial state behind. Nothing is retried here.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from clock import SystemClock
from errors import AccessDeniedError, LimitExceededError, NotFoundError, UnavailableError
from penalties import compute_penalty, days_overdue
from schemas import BorrowRecord, LoanDetail, PenaltyRecord, as_date
from store import BOOKS, BORROW_RECORDS, PENALTY_RECORDS, STUDENTS, LibraryStore, is_valid_id

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


class CirculationService:
    def __init__(
        self,
        store: LibraryStore,
        clock=None,
        penalty_rate: int = 5,
        max_open_loans: int = 3,
        default_loan_days: int = 14,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.penalty_rate = penalty_rate
        self.max_open_loans = max_open_loans
        self.default_loan_days = default_loan_days

    def borrow_book(self, student_id: str, book_id: str, due_date: Optional[date] = None) -> Dict:
        if due_date is None:
            due_date = self.clock.today() + timedelta(days=self.default_loan_days)
        if not is_valid_id(book_id):
            raise NotFoundError("Book not found")

        with self.store.transaction() as txn:
            book = txn.lock(BOOKS, book_id)
            if book is None:
                raise NotFoundError("Book not found")
            if book["available_quantity"] <= 0:
                raise UnavailableError("Book not available for borrowing")

            student = txn.lock(STUDENTS, student_id) if is_valid_id(student_id) else None
            if student is None:
                raise NotFoundError("Student not found")
            open_loans = txn.count(BORROW_RECORDS, student_id=student_id, is_returned=False)
            if open_loans >= self.max_open_loans:
                raise LimitExceededError(
                    f"Borrowing limit exceeded (maximum {self.max_open_loans} books)"
                )

            record = BorrowRecord(
                student_id=student_id,
                book_id=book_id,
                borrow_date=self.clock.now(),
                due_date=due_date,
            )
            borrow_id = txn.insert(BORROW_RECORDS, record.to_document())
            txn.update(BOOKS, book_id, increments={"available_quantity": -1})
            txn.update(STUDENTS, student_id, increments={"total_borrowed": 1})

        logger.info("Book %s borrowed by student %s (loan %s)", book_id, student_id, borrow_id)
        return {"borrow_id": borrow_id, "due_date": due_date, "title": book["title"]}

    def return_book(self, loan_id: str, acting_student_id: Optional[str] = None) -> Dict:
        """Close a loan, restore the copy and charge any overdue penalty.

        When `acting_student_id` is given the loan must belong to that
        student. Returning an unknown or already returned loan is NotFound.
        """
        if not is_valid_id(loan_id):
            raise NotFoundError("Borrow record not found or already returned")

        with self.store.transaction() as txn:
            loan = txn.lock(BORROW_RECORDS, loan_id)
            if loan is None or loan["is_returned"]:
                raise NotFoundError("Borrow record not found or already returned")
            if acting_student_id is not None and loan["student_id"] != acting_student_id:
                raise AccessDeniedError("Access denied")

            now = self.clock.now()
            due = as_date(loan["due_date"])
            overdue_days = days_overdue(due, now.date())
            penalty = compute_penalty(due, now.date(), self.penalty_rate)

            txn.update(
                BORROW_RECORDS,
                loan_id,
                fields={
                    "is_returned": True,
                    "return_date": now,
                    "is_overdue": overdue_days > 0,
                    "penalty_amount": penalty,
                },
            )
            book = txn.lock(BOOKS, loan["book_id"])
            txn.update(BOOKS, loan["book_id"], increments={"available_quantity": 1})
            txn.update(
                STUDENTS,
                loan["student_id"],
                increments={"total_returned": 1, "penalty_amount": penalty},
            )
            if penalty > 0:
                record = PenaltyRecord(
                    student_id=loan["student_id"],
                    borrow_record_id=loan_id,
                    penalty_amount=penalty,
                    penalty_date=now,
                    notes="Late return penalty",
                )
                txn.insert(PENALTY_RECORDS, record.to_document())

        if penalty > 0:
            logger.info("Loan %s returned %d day(s) late, penalty %d", loan_id, overdue_days, penalty)
        else:
            logger.info("Loan %s returned", loan_id)
        return {"penalty": penalty, "days_overdue": overdue_days, "title": (book or {}).get("title")}

    def _details(self, loans: List[Dict], with_student: bool = False) -> List[LoanDetail]:
        today = self.clock.today()
        books = {b["_id"]: b for b in self.store.find(BOOKS)}
        students = {s["_id"]: s for s in self.store.find(STUDENTS)} if with_student else {}
        details = []
        for loan in loans:
            book = books.get(loan["book_id"], {})
            extra = dict(
                title=book.get("title"),
                author=book.get("author"),
                category=book.get("category"),
                isbn=book.get("isbn"),
                cover_image=book.get("cover_image"),
                days_overdue=0 if loan["is_returned"] else days_overdue(as_date(loan["due_date"]), today),
            )
            if with_student:
                student = students.get(loan["student_id"], {})
                extra.update(
                    college_id=student.get("college_id"),
                    student_name=student.get("full_name"),
                    student_email=student.get("email"),
                )
            details.append(LoanDetail.from_document(loan, **extra))
        details.sort(key=lambda l: l.borrow_date, reverse=True)
        return details

    def list_open_loans(self, student_id: str) -> List[LoanDetail]:
        return self._details(self.store.find(BORROW_RECORDS, student_id=student_id, is_returned=False))

    def borrow_history(self, student_id: str) -> List[LoanDetail]:
        return self._details(self.store.find(BORROW_RECORDS, student_id=student_id))[:HISTORY_LIMIT]

    def list_borrowed_books(self) -> List[LoanDetail]:
        return self._details(self.store.find(BORROW_RECORDS, is_returned=False), with_student=True)
