from datetime import timedelta

from conftest import ADMIN, NOW, as_student
from store import BOOKS, STUDENTS


def _register(client, college_id="CS0100", email="asha@college.edu"):
    response = client.post(
        "/api/students/register",
        json={"collegeId": college_id, "fullName": "Asha Rao", "email": email, "course": "B.Tech"},
    )
    assert response.status_code == 201
    return response.json()["studentId"]


def _add_book(client, isbn="9780441172719", total=5, category="Fiction", title="Dune"):
    response = client.post(
        "/api/books",
        json={"title": title, "author": "Frank Herbert", "category": category, "isbn": isbn, "totalQuantity": total},
        headers=ADMIN,
    )
    assert response.status_code == 201
    return response.json()["bookId"]


def test_health(client):
    assert client.get("/").status_code == 200
    body = client.get("/test").json()
    assert body["store"] == "memory"
    assert body["connection_status"] == "Connected"


def test_borrow_and_late_return(client, clock, store):
    student_id = _register(client)
    book_id = _add_book(client, total=5)
    due = (NOW.date() + timedelta(days=14)).isoformat()

    response = client.post("/api/borrow", json={"bookId": book_id, "dueDate": due}, headers=as_student(student_id))

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["dueDate"] == due
    assert store.get(BOOKS, book_id)["available_quantity"] == 4

    clock.advance(days=24)
    response = client.put(f"/api/borrow/{body['borrowId']}/return", headers=as_student(student_id))

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": 'Book "Dune" returned successfully', "penalty": 50}
    assert store.get(STUDENTS, student_id)["penalty_amount"] == 50

    again = client.put(f"/api/borrow/{body['borrowId']}/return", headers=as_student(student_id))
    assert again.status_code == 404
    assert again.json()["kind"] == "NotFound"


def test_borrow_failures_carry_kind(client):
    student_id = _register(client)
    book_id = _add_book(client, total=1)
    other = _register(client, college_id="CS0101", email="ravi@college.edu")
    client.post("/api/borrow", json={"bookId": book_id}, headers=as_student(other))

    response = client.post("/api/borrow", json={"bookId": book_id}, headers=as_student(student_id))

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "message": "Book not available for borrowing",
        "kind": "Unavailable",
    }


def test_limit_exceeded(client):
    student_id = _register(client)
    for n in range(3):
        book_id = _add_book(client, isbn=f"isbn-{n}")
        assert client.post("/api/borrow", json={"bookId": book_id}, headers=as_student(student_id)).status_code == 201

    response = client.post("/api/borrow", json={"bookId": _add_book(client, isbn="isbn-x")}, headers=as_student(student_id))

    assert response.status_code == 400
    assert response.json()["kind"] == "LimitExceeded"


def test_borrow_requires_identity(client):
    response = client.post("/api/borrow", json={"bookId": "ffffffffffffffffffffffff"})
    assert response.status_code == 401
    assert response.json()["success"] is False


def test_validation_errors_use_response_shape(client):
    response = client.post("/api/borrow", json={"dueDate": "soon"}, headers=as_student("x"))
    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == "Validation"


def test_open_loans_are_private(client, clock):
    owner = _register(client)
    other = _register(client, college_id="CS0101", email="ravi@college.edu")
    book_id = _add_book(client)
    due = (NOW.date() - timedelta(days=2)).isoformat()
    client.post("/api/borrow", json={"bookId": book_id, "dueDate": due}, headers=as_student(owner))

    mine = client.get(f"/api/borrow/student/{owner}", headers=as_student(owner))
    theirs = client.get(f"/api/borrow/student/{owner}", headers=as_student(other))
    as_admin = client.get(f"/api/borrow/student/{owner}", headers=ADMIN)

    assert mine.status_code == 200
    [loan] = mine.json()["borrowedBooks"]
    assert loan["daysOverdue"] == 2
    assert loan["title"] == "Dune"
    assert theirs.status_code == 403
    assert theirs.json()["kind"] == "AccessDenied"
    assert as_admin.status_code == 200


def test_admin_can_return_any_loan_but_students_cannot(client):
    owner = _register(client)
    other = _register(client, college_id="CS0101", email="ravi@college.edu")
    borrow_id = client.post(
        "/api/borrow", json={"bookId": _add_book(client)}, headers=as_student(owner)
    ).json()["borrowId"]

    assert client.put(f"/api/borrow/{borrow_id}/return", headers=as_student(other)).status_code == 403
    assert client.put(f"/api/borrow/{borrow_id}/return", headers=ADMIN).json()["penalty"] == 0


def test_book_management_requires_admin(client):
    response = client.post(
        "/api/books",
        json={"title": "Dune", "author": "Frank Herbert", "category": "Fiction", "isbn": "1", "totalQuantity": 1},
        headers=as_student("s1"),
    )
    assert response.status_code == 403
    assert client.get("/api/admin/dashboard/stats", headers=as_student("s1")).status_code == 403


def test_update_book_below_open_loans(client, store):
    book_id = _add_book(client, total=2)
    for n in range(2):
        student_id = _register(client, college_id=f"CS02{n}", email=f"s{n}@college.edu")
        client.post("/api/borrow", json={"bookId": book_id}, headers=as_student(student_id))

    update = {"title": "Dune", "author": "Frank Herbert", "category": "Fiction", "isbn": "9780441172719"}
    refused = client.put(f"/api/books/{book_id}", json=dict(update, totalQuantity=1), headers=ADMIN)
    accepted = client.put(f"/api/books/{book_id}", json=dict(update, totalQuantity=3), headers=ADMIN)

    assert refused.status_code == 400
    assert refused.json()["kind"] == "InvalidQuantity"
    assert accepted.json()["newAvailableQuantity"] == 1
    assert store.get(BOOKS, book_id)["available_quantity"] == 1


def test_duplicate_registration(client):
    _register(client)
    response = client.post(
        "/api/students/register",
        json={"collegeId": "CS0100", "fullName": "Someone Else", "email": "else@college.edu"},
    )
    assert response.status_code == 409
    assert response.json()["kind"] == "Conflict"


def test_favorites_toggle(client):
    student_id = _register(client)
    book_id = _add_book(client)
    headers = as_student(student_id)

    added = client.post("/api/students/favorites/toggle", json={"bookId": book_id}, headers=headers)
    listed = client.get(f"/api/students/{student_id}/favorites", headers=headers)
    removed = client.post("/api/students/favorites/toggle", json={"bookId": book_id}, headers=headers)

    assert added.json()["action"] == "added"
    assert [b["id"] for b in listed.json()["favorites"]] == [book_id]
    assert removed.json()["action"] == "removed"
    assert client.get(f"/api/students/{student_id}/favorites", headers=headers).json()["favorites"] == []


def test_clear_penalty_endpoint(client, clock, store):
    student_id = _register(client)
    borrow_id = client.post(
        "/api/borrow",
        json={"bookId": _add_book(client), "dueDate": NOW.date().isoformat()},
        headers=as_student(student_id),
    ).json()["borrowId"]
    clock.advance(days=4)
    client.put(f"/api/borrow/{borrow_id}/return", headers=as_student(student_id))

    penalties = client.get("/api/admin/penalties", headers=ADMIN).json()["penalties"]
    assert [p["penaltyAmount"] for p in penalties] == [20]

    response = client.put(f"/api/admin/penalties/{student_id}/clear", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert store.get(STUDENTS, student_id)["penalty_amount"] == 0
    assert client.get("/api/admin/penalties", headers=ADMIN).json()["penalties"][0]["isPaid"] is True


def test_admin_students_and_toggle(client):
    student_id = _register(client)
    client.post("/api/borrow", json={"bookId": _add_book(client)}, headers=as_student(student_id))

    [student] = client.get("/api/admin/students", headers=ADMIN).json()["students"]
    assert student["currentBorrowed"] == 1
    assert student["totalBorrowed"] == 1

    toggled = client.put(f"/api/admin/students/{student_id}/toggle-status", headers=ADMIN)
    assert toggled.json()["isActive"] is False
    assert client.get("/api/admin/dashboard/stats", headers=ADMIN).json()["stats"]["totalStudents"] == 0


def test_dashboard_and_report(client, clock):
    student_id = _register(client)
    fiction = _add_book(client, isbn="1", category="Fiction", title="Dune")
    _add_book(client, isbn="2", category="Fiction", title="Emma")
    _add_book(client, isbn="3", category="History", title="SPQR")
    client.post(
        "/api/borrow",
        json={"bookId": fiction, "dueDate": (NOW.date() - timedelta(days=1)).isoformat()},
        headers=as_student(student_id),
    )

    stats = client.get("/api/admin/dashboard/stats", headers=ADMIN).json()["stats"]
    assert stats == {
        "totalBooks": 3,
        "totalStudents": 1,
        "totalBorrowed": 1,
        "totalOverdue": 1,
        "totalPenalties": 0,
    }

    report = client.get("/api/admin/reports/library", headers=ADMIN).json()["reportData"]
    assert report["categoryDistribution"] == [
        {"category": "Fiction", "count": 2},
        {"category": "History", "count": 1},
    ]
    assert report["topBorrowedBooks"][0]["title"] == "Dune"
    assert report["topBorrowedBooks"][0]["borrowCount"] == 1
    [week] = report["weeklyBorrowingTrend"]
    assert week["week"] == "Week 8"
    assert week["borrowed"] == 1
    assert week["returned"] == 0

    borrowed = client.get("/api/admin/borrowed-books", headers=ADMIN).json()["borrowedBooks"]
    assert borrowed[0]["daysOverdue"] == 1
    assert borrowed[0]["studentName"] == "Asha Rao"


def test_trending_is_public(client):
    _add_book(client)
    response = client.get("/api/books/trending")
    assert response.status_code == 200
    assert response.json()["books"][0]["borrowCount"] == 0
