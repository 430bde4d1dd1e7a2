"""
Database Schemas for the Library

Each Pydantic model maps to a collection (snake_case plural of the class):
- Book -> "books"
- Student -> "students"
- BorrowRecord -> "borrow_records"
- PenaltyRecord -> "penalty_records"
- Favorite -> "favorites"

Documents are stored with snake_case field names and rendered on the wire
with camelCase aliases. Dates (not datetimes) are stored as ISO strings.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel


def as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = Field(None, description="Document id")

    @classmethod
    def from_document(cls, doc: Dict[str, Any], **extra: Any):
        data = {k: v for k, v in doc.items() if not k.startswith("_")}
        data.update(extra)
        return cls(id=doc.get("_id"), **data)

    def to_document(self) -> Dict[str, Any]:
        data = self.model_dump(exclude={"id"})
        for key, value in data.items():
            if isinstance(value, date) and not isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class Book(Document):
    """
    Books collection schema
    Collection: "books"
    """
    title: str = Field(..., min_length=1, description="Book title")
    author: str = Field(..., min_length=1, description="Author name")
    category: str = Field(..., min_length=1, description="Shelf category")
    isbn: str = Field(..., min_length=1, description="ISBN number, unique")
    cover_image: Optional[str] = Field(None, description="Cover image URL")
    description: Optional[str] = Field(None, description="Brief description")
    total_quantity: int = Field(..., ge=0, description="Total copies owned")
    available_quantity: int = Field(..., ge=0, description="Copies currently on the shelf")
    date_added: Optional[datetime] = Field(None, description="When the book was catalogued")

    @model_validator(mode="after")
    def check_available_within_total(self):
        if self.available_quantity > self.total_quantity:
            raise ValueError("available_quantity cannot exceed total_quantity")
        return self


class Student(Document):
    """
    Students collection schema
    Collection: "students"
    """
    college_id: str = Field(..., min_length=1, description="College ID, unique")
    full_name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    course: Optional[str] = Field(None, description="Enrolled course")
    is_active: bool = Field(True, description="Active membership")
    registration_date: Optional[datetime] = Field(None, description="Registration time")
    total_borrowed: int = Field(0, ge=0)
    total_returned: int = Field(0, ge=0)
    penalty_amount: int = Field(0, ge=0, description="Outstanding penalty total")


class BorrowRecord(Document):
    """
    Borrow records collection schema
    Collection: "borrow_records"
    """
    student_id: str = Field(..., description="ID of the student")
    book_id: str = Field(..., description="ID of the book")
    borrow_date: datetime = Field(..., description="When the loan was made")
    due_date: date = Field(..., description="Due date")
    return_date: Optional[datetime] = Field(None, description="Return time if returned")
    is_returned: bool = False
    is_overdue: bool = False
    penalty_amount: int = Field(0, ge=0, description="Penalty charged at return")


class PenaltyRecord(Document):
    """
    Penalty records collection schema
    Collection: "penalty_records"
    """
    student_id: str
    borrow_record_id: str
    penalty_type: Literal["overdue"] = "overdue"
    penalty_amount: int = Field(..., gt=0)
    penalty_date: datetime
    is_paid: bool = False
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None


class Favorite(Document):
    """
    Favorites collection schema
    Collection: "favorites"
    """
    student_id: str
    book_id: str
    created_at: datetime


# Joined read models

class LoanDetail(BorrowRecord):
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    isbn: Optional[str] = None
    cover_image: Optional[str] = None
    college_id: Optional[str] = None
    student_name: Optional[str] = None
    student_email: Optional[str] = None
    days_overdue: int = 0


class PenaltyDetail(PenaltyRecord):
    college_id: Optional[str] = None
    student_name: Optional[str] = None
    student_email: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None


class StudentSummary(Student):
    current_borrowed: int = 0


class TrendingBook(Book):
    borrow_count: int = 0


# Request payloads

class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BorrowIn(Payload):
    book_id: str
    due_date: Optional[date] = None


class BookIn(Payload):
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    isbn: str = Field(..., min_length=1)
    cover_image: Optional[str] = None
    description: Optional[str] = None
    total_quantity: int = Field(..., ge=0)


class StudentIn(Payload):
    college_id: str = Field(..., min_length=1)
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    course: Optional[str] = None


class FavoriteIn(Payload):
    book_id: str


class CategoryCount(Payload):
    category: str
    count: int


class WeeklyTrend(Payload):
    week: str
    week_start: date
    borrowed: int
    returned: int


class DashboardStats(Payload):
    total_books: int
    total_students: int
    total_borrowed: int
    total_overdue: int
    total_penalties: int


class LibraryReport(DashboardStats):
    category_distribution: List[CategoryCount] = []
    weekly_borrowing_trend: List[WeeklyTrend] = []
    top_borrowed_books: List[TrendingBook] = []
