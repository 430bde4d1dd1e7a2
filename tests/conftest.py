from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from circulation import CirculationService
from clock import FixedClock
from main import create_app
from schemas import Book, Student
from settings import Settings
from store import BOOKS, STUDENTS, InMemoryLibraryStore

NOW = datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc)

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


def as_student(student_id):
    return {"X-User-Id": student_id, "X-User-Role": "student"}


@pytest.fixture
def store():
    return InMemoryLibraryStore(lock_timeout=2.0)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def circulation(store, clock):
    return CirculationService(store, clock, penalty_rate=5, max_open_loans=3, default_loan_days=14)


@pytest.fixture
def make_book(store):
    counter = {"n": 0}

    def _make(title="Dune", total=5, available=None, category="Fiction", isbn=None):
        counter["n"] += 1
        book = Book(
            title=title,
            author="Frank Herbert",
            category=category,
            isbn=isbn or f"978000000{counter['n']:04d}",
            total_quantity=total,
            available_quantity=total if available is None else available,
            date_added=NOW,
        )
        with store.transaction() as txn:
            return txn.insert(BOOKS, book.to_document())

    return _make


@pytest.fixture
def make_student(store):
    counter = {"n": 0}

    def _make(name="Asha Rao"):
        counter["n"] += 1
        student = Student(
            college_id=f"CS{counter['n']:04d}",
            full_name=name,
            email=f"student{counter['n']}@college.edu",
            registration_date=NOW,
        )
        with store.transaction() as txn:
            return txn.insert(STUDENTS, student.to_document())

    return _make


@pytest.fixture
def client(store, clock):
    app = create_app(store=store, clock=clock, settings=Settings())
    with TestClient(app) as c:
        yield c
