"""
Read-only aggregates for the admin dashboard and library report.
"""

from collections import Counter
from datetime import timedelta

from clock import SystemClock
from inventory import InventoryService
from schemas import CategoryCount, DashboardStats, LibraryReport, WeeklyTrend, as_date
from store import BOOKS, BORROW_RECORDS, PENALTY_RECORDS, STUDENTS, LibraryStore

TREND_WEEKS = 8
TOP_BOOKS = 10


class ReportService:
    def __init__(self, store: LibraryStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()

    def dashboard_stats(self) -> DashboardStats:
        today = self.clock.today()
        open_loans = self.store.find(BORROW_RECORDS, is_returned=False)
        return DashboardStats(
            total_books=len(self.store.find(BOOKS)),
            total_students=len(self.store.find(STUDENTS, is_active=True)),
            total_borrowed=len(open_loans),
            total_overdue=sum(1 for loan in open_loans if as_date(loan["due_date"]) < today),
            total_penalties=sum(p["penalty_amount"] for p in self.store.find(PENALTY_RECORDS, is_paid=False)),
        )

    def library_report(self) -> LibraryReport:
        books = self.store.find(BOOKS)
        loans = self.store.find(BORROW_RECORDS)

        categories = Counter(book["category"] for book in books)
        distribution = [
            CategoryCount(category=name, count=count)
            for name, count in sorted(categories.items(), key=lambda item: (-item[1], item[0]))
        ]

        return LibraryReport(
            **self.dashboard_stats().model_dump(),
            category_distribution=distribution,
            weekly_borrowing_trend=self.weekly_trend(loans),
            top_borrowed_books=InventoryService(self.store).trending_books(TOP_BOOKS),
        )

    def weekly_trend(self, loans) -> list:
        """Loans borrowed in the last eight weeks, grouped by ISO week (Monday start)."""
        today = self.clock.today()
        this_week = today - timedelta(days=today.weekday())
        first_week = this_week - timedelta(weeks=TREND_WEEKS - 1)
        borrowed = Counter()
        returned = Counter()
        for loan in loans:
            day = as_date(loan["borrow_date"])
            week = day - timedelta(days=day.weekday())
            if week < first_week or week > this_week:
                continue
            borrowed[week] += 1
            if loan["is_returned"]:
                returned[week] += 1
        return [
            WeeklyTrend(
                week=f"Week {(week - first_week).days // 7 + 1}",
                week_start=week,
                borrowed=borrowed[week],
                returned=returned[week],
            )
            for week in sorted(borrowed)
        ]
