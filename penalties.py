"""
Penalty accrual and clearing.

A penalty is charged once per loan, at return time, for each whole day the
return falls after the due date. The stored amount is never recomputed.
"""

import logging
from datetime import date
from typing import List

from clock import SystemClock
from errors import NotFoundError
from schemas import PenaltyDetail
from store import BOOKS, BORROW_RECORDS, PENALTY_RECORDS, STUDENTS, LibraryStore, is_valid_id

logger = logging.getLogger(__name__)


def days_overdue(due_date: date, on: date) -> int:
    return max(0, (on - due_date).days)


def compute_penalty(due_date: date, return_date: date, rate: int) -> int:
    return days_overdue(due_date, return_date) * rate


class PenaltyService:
    def __init__(self, store: LibraryStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()

    def clear_penalties(self, student_id: str) -> int:
        """Mark every unpaid penalty of a student paid and zero their balance.

        An administrative override: no payment is verified. Returns the
        number of records cleared.
        """
        if not is_valid_id(student_id):
            raise NotFoundError("Student not found")
        now = self.clock.now()
        with self.store.transaction() as txn:
            student = txn.lock(STUDENTS, student_id)
            if student is None:
                raise NotFoundError("Student not found")
            cleared = txn.update_many(
                PENALTY_RECORDS,
                {"student_id": student_id, "is_paid": False},
                {"is_paid": True, "payment_date": now},
            )
            txn.update(STUDENTS, student_id, fields={"penalty_amount": 0})
        logger.info("Cleared %d penalty record(s) for student %s", cleared, student_id)
        return cleared

    def list_penalties(self) -> List[PenaltyDetail]:
        students = {s["_id"]: s for s in self.store.find(STUDENTS)}
        loans = {l["_id"]: l for l in self.store.find(BORROW_RECORDS)}
        books = {b["_id"]: b for b in self.store.find(BOOKS)}
        details = []
        for doc in self.store.find(PENALTY_RECORDS):
            student = students.get(doc["student_id"], {})
            book = books.get(loans.get(doc["borrow_record_id"], {}).get("book_id"), {})
            details.append(
                PenaltyDetail.from_document(
                    doc,
                    college_id=student.get("college_id"),
                    student_name=student.get("full_name"),
                    student_email=student.get("email"),
                    title=book.get("title"),
                    author=book.get("author"),
                )
            )
        details.sort(key=lambda p: p.penalty_date, reverse=True)
        return details
