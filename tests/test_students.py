from datetime import timedelta

import pytest

from errors import ConflictError, NotFoundError
from reports import ReportService
from schemas import StudentIn
from store import STUDENTS
from students import StudentService


@pytest.fixture
def students(store, clock):
    return StudentService(store, clock)


def test_register_starts_active_with_zero_counters(store, students):
    student_id = students.register(StudentIn(college_id="CS1", full_name="Asha Rao", email="asha@college.edu"))
    student = store.get(STUDENTS, student_id)
    assert student["is_active"] is True
    assert student["total_borrowed"] == 0
    assert student["total_returned"] == 0
    assert student["penalty_amount"] == 0


def test_register_rejects_taken_email(students):
    students.register(StudentIn(college_id="CS1", full_name="Asha Rao", email="asha@college.edu"))
    with pytest.raises(ConflictError):
        students.register(StudentIn(college_id="CS2", full_name="Asha R", email="asha@college.edu"))


def test_toggle_status_flips(students, make_student):
    student_id = make_student()
    assert students.toggle_status(student_id) is False
    assert students.toggle_status(student_id) is True


def test_toggle_status_unknown(students):
    with pytest.raises(NotFoundError):
        students.toggle_status("ffffffffffffffffffffffff")


def test_favorite_of_unknown_book(students, make_student):
    with pytest.raises(NotFoundError):
        students.toggle_favorite(make_student(), "ffffffffffffffffffffffff")


def test_list_students_counts_open_loans(circulation, students, make_book, make_student):
    busy, idle = make_student(), make_student()
    circulation.borrow_book(busy, make_book())
    loan = circulation.borrow_book(busy, make_book())
    circulation.return_book(loan["borrow_id"])

    counts = {s.id: s.current_borrowed for s in students.list_students()}

    assert counts == {busy: 1, idle: 0}


def test_weekly_trend_ignores_loans_older_than_eight_weeks(store, clock, circulation, make_book, make_student):
    student_id = make_student()
    loan = circulation.borrow_book(student_id, make_book())
    circulation.return_book(loan["borrow_id"])
    clock.advance(days=7)
    circulation.borrow_book(student_id, make_book())
    clock.advance(days=7 * 7)
    circulation.borrow_book(student_id, make_book())

    trend = ReportService(store, clock).library_report().weekly_borrowing_trend

    assert [(w.week, w.borrowed, w.returned) for w in trend] == [("Week 1", 1, 0), ("Week 8", 1, 0)]
    assert trend[0].week_start == clock.today() - timedelta(weeks=7)
