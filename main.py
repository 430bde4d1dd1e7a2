import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from circulation import CirculationService
from clock import SystemClock
from database import get_store
from errors import DatabaseError, LibraryError
from identity import Identity, get_identity, require_admin
from inventory import InventoryService
from penalties import PenaltyService
from reports import ReportService
from schemas import BookIn, BorrowIn, FavoriteIn, StudentIn
from settings import Settings
from store import LibraryStore
from students import StudentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _circulation(request: Request) -> CirculationService:
    return request.app.state.circulation


def _inventory(request: Request) -> InventoryService:
    return request.app.state.inventory


def _students(request: Request) -> StudentService:
    return request.app.state.students


def _penalties(request: Request) -> PenaltyService:
    return request.app.state.penalties


def _reports(request: Request) -> ReportService:
    return request.app.state.reports


def _wire(items):
    return [item.to_wire() for item in items]


# Borrow endpoints
@router.post("/borrow", status_code=201)
def borrow_book(
    payload: BorrowIn,
    identity: Identity = Depends(get_identity),
    circulation: CirculationService = Depends(_circulation),
):
    result = circulation.borrow_book(identity.user_id, payload.book_id, payload.due_date)
    return {
        "success": True,
        "message": f'Book "{result["title"]}" borrowed successfully',
        "borrowId": result["borrow_id"],
        "dueDate": result["due_date"].isoformat(),
    }


@router.put("/borrow/{loan_id}/return")
def return_book(
    loan_id: str,
    identity: Identity = Depends(get_identity),
    circulation: CirculationService = Depends(_circulation),
):
    acting = None if identity.is_admin else identity.user_id
    result = circulation.return_book(loan_id, acting_student_id=acting)
    return {
        "success": True,
        "message": f'Book "{result["title"]}" returned successfully',
        "penalty": result["penalty"],
    }


@router.get("/borrow/student/{student_id}")
def student_borrowed_books(
    student_id: str,
    identity: Identity = Depends(get_identity),
    circulation: CirculationService = Depends(_circulation),
):
    identity.ensure_self_or_admin(student_id)
    return {"success": True, "borrowedBooks": _wire(circulation.list_open_loans(student_id))}


@router.get("/borrow/history/{student_id}")
def borrow_history(
    student_id: str,
    identity: Identity = Depends(get_identity),
    circulation: CirculationService = Depends(_circulation),
):
    identity.ensure_self_or_admin(student_id)
    return {"success": True, "history": _wire(circulation.borrow_history(student_id))}


# Books endpoints
@router.get("/books")
def list_books(inventory: InventoryService = Depends(_inventory)):
    return {"success": True, "books": _wire(inventory.list_books())}


@router.get("/books/trending")
def trending_books(inventory: InventoryService = Depends(_inventory)):
    return {"success": True, "books": _wire(inventory.trending_books())}


@router.post("/books", status_code=201, dependencies=[Depends(require_admin)])
def add_book(payload: BookIn, inventory: InventoryService = Depends(_inventory)):
    book_id = inventory.add_book(payload)
    return {"success": True, "message": "Book added successfully", "bookId": book_id}


@router.put("/books/{book_id}", dependencies=[Depends(require_admin)])
def update_book(book_id: str, payload: BookIn, inventory: InventoryService = Depends(_inventory)):
    available = inventory.update_book(book_id, payload)
    return {"success": True, "message": "Book updated successfully", "newAvailableQuantity": available}


@router.delete("/books/{book_id}", dependencies=[Depends(require_admin)])
def delete_book(book_id: str, inventory: InventoryService = Depends(_inventory)):
    inventory.delete_book(book_id)
    return {"success": True, "message": "Book deleted successfully"}


# Students endpoints
@router.post("/students/register", status_code=201)
def register_student(payload: StudentIn, students: StudentService = Depends(_students)):
    student_id = students.register(payload)
    return {"success": True, "message": "Registration successful", "studentId": student_id}


@router.post("/students/favorites/toggle")
def toggle_favorite(
    payload: FavoriteIn,
    identity: Identity = Depends(get_identity),
    students: StudentService = Depends(_students),
):
    action = students.toggle_favorite(identity.user_id, payload.book_id)
    message = "Book added to favorites" if action == "added" else "Book removed from favorites"
    return {"success": True, "message": message, "action": action}


@router.get("/students/{student_id}/favorites")
def list_favorites(
    student_id: str,
    identity: Identity = Depends(get_identity),
    students: StudentService = Depends(_students),
):
    identity.ensure_self_or_admin(student_id)
    return {"success": True, "favorites": _wire(students.list_favorites(student_id))}


# Admin endpoints
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


@admin.get("/dashboard/stats")
def dashboard_stats(reports: ReportService = Depends(_reports)):
    return {"success": True, "stats": reports.dashboard_stats().model_dump(by_alias=True, mode="json")}


@admin.get("/students")
def list_students(students: StudentService = Depends(_students)):
    return {"success": True, "students": _wire(students.list_students())}


@admin.put("/students/{student_id}/toggle-status")
def toggle_student_status(student_id: str, students: StudentService = Depends(_students)):
    active = students.toggle_status(student_id)
    return {"success": True, "message": "Student status updated successfully", "isActive": active}


@admin.get("/borrowed-books")
def all_borrowed_books(circulation: CirculationService = Depends(_circulation)):
    return {"success": True, "borrowedBooks": _wire(circulation.list_borrowed_books())}


@admin.get("/penalties")
def list_penalties(penalties: PenaltyService = Depends(_penalties)):
    return {"success": True, "penalties": _wire(penalties.list_penalties())}


@admin.put("/penalties/{student_id}/clear")
def clear_penalty(student_id: str, penalties: PenaltyService = Depends(_penalties)):
    cleared = penalties.clear_penalties(student_id)
    return {"success": True, "message": "Penalty cleared successfully", "cleared": cleared}


@admin.get("/reports/library")
def library_report(reports: ReportService = Depends(_reports)):
    report = reports.library_report()
    return {"success": True, "reportData": report.model_dump(by_alias=True, mode="json")}


router.include_router(admin)


async def library_error(request: Request, exc: LibraryError):
    if isinstance(exc, DatabaseError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s refused: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "kind": exc.kind},
    )


async def validation_error(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        "%s: %s" % (".".join(str(p) for p in error["loc"][1:]) or "body", error["msg"])
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=422,
        content={"success": False, "message": f"Invalid request: {problems}", "kind": "Validation"},
    )


async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail), "kind": "Http"},
    )


def create_app(
    store: Optional[LibraryStore] = None,
    clock=None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    store = store or get_store(settings)
    clock = clock or SystemClock()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.prepare()
        yield

    app = FastAPI(title="Library Management API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LibraryError, library_error)
    app.add_exception_handler(RequestValidationError, validation_error)
    app.add_exception_handler(StarletteHTTPException, http_error)

    app.state.settings = settings
    app.state.store = store
    app.state.circulation = CirculationService(
        store,
        clock,
        penalty_rate=settings.penalty_rate_per_day,
        max_open_loans=settings.max_open_loans,
        default_loan_days=settings.default_loan_days,
    )
    app.state.inventory = InventoryService(store, clock)
    app.state.students = StudentService(store, clock)
    app.state.penalties = PenaltyService(store, clock)
    app.state.reports = ReportService(store, clock)

    @app.get("/")
    def read_root():
        return {"message": "Library Management Backend is running"}

    @app.get("/test")
    def test_database():
        connected = store.ping()
        return {
            "backend": "✅ Running",
            "database": "✅ Connected & Working" if connected else "❌ Not Available",
            "store": store.name,
            "connection_status": "Connected" if connected else "Not Connected",
        }

    app.include_router(router)
    return app


settings = Settings.from_env()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(settings=settings)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
