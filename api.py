import logging
from contextlib import contextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from errors import (AlreadyIssued, BookUnavailable, CirculationError, InvalidTransition,
                    InventoryCorruptionError, NoCopyAvailable, NotFoundError)
from library import Library
from models import RequestStatus, ReviewStatus, utcnow

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

library = Library()

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that guards the admin endpoints."""
    if api_key == settings.api_key:
        return api_key
    else:
        raise HTTPException(
            status_code=403,
            detail="Could not validate credentials",
        )


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    # InvalidTransition is also a ValueError, so it must be matched first
    if isinstance(exc, (InvalidTransition, BookUnavailable, NoCopyAvailable, AlreadyIssued)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@contextmanager
def _http_errors():
    try:
        yield
    except InventoryCorruptionError:
        logger.exception("Inventory accounting failed")
        raise HTTPException(status_code=500, detail="Inventory is inconsistent; contact an administrator.")
    except (CirculationError, ValueError) as e:
        raise _to_http_error(e) from e


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    category: str = ""
    total_count: int
    available_count: int
    available_copy_ids: List[str] = []
    created_at: str | None = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    category: str = ""
    quantity: int = Field(1, ge=1)


class CopiesModel(BaseModel):
    quantity: int = Field(..., ge=1)


class UserCreateModel(BaseModel):
    name: str
    student_id: str
    role: str = "student"


class RequestModel(BaseModel):
    id: str
    user_id: str
    book_id: str
    status: str
    requested_at: str | None = None
    issued_at: str | None = None
    due_date: str | None = None
    returned_at: str | None = None
    copy_id: str | None = None
    loan_status: str | None = None
    days_overdue: int = 0


class RequestCreateModel(BaseModel):
    user_id: str
    book_id: str


class ManualIssueModel(BaseModel):
    copy_id: str
    student_id: str


class ReviewCreateModel(BaseModel):
    user_id: str
    book_id: str
    type: str = "review"
    content: str
    rating: Optional[int] = None


class AdditionCreateModel(BaseModel):
    user_id: str
    book_title: str
    author: Optional[str] = None
    reference_link: Optional[str] = None


def _request_out(request) -> RequestModel:
    now = library.clock()
    return RequestModel(
        **request.to_dict(),
        loan_status=library.circulation.loan_status(request, now),
        days_overdue=library.circulation.days_overdue(request, now),
    )


# --- Health ---
@app.get("/health")
def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "total_books": len(library.list_books()),
        "version": settings.app_version,
    }


# --- Catalog ---
@app.get("/books", response_model=List[BookModel])
def list_books(category: Optional[str] = None, q: Optional[str] = Query(None, description="Search text")):
    """List the catalog, optionally filtered by category or a search string."""
    books = library.search_books(q) if q else library.list_books(category=category)
    if q and category:
        books = [b for b in books if b.category == category]
    return [BookModel(**b.to_dict()) for b in books]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    with _http_errors():
        return BookModel(**library.get_book(book_id).to_dict())


@app.post("/books", response_model=BookModel, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel):
    with _http_errors():
        book = library.add_book(payload.title, payload.author, payload.category, payload.quantity)
    return BookModel(**book.to_dict())


@app.post("/books/{book_id}/copies", response_model=BookModel, dependencies=[Depends(get_api_key)])
def add_copies(book_id: str, payload: CopiesModel):
    with _http_errors():
        book = library.add_copies(book_id, payload.quantity)
    return BookModel(**book.to_dict())


@app.get("/categories")
def list_categories():
    return library.list_categories()


# --- Users ---
@app.post("/users", dependencies=[Depends(get_api_key)])
def register_user(payload: UserCreateModel):
    with _http_errors():
        user = library.register_user(payload.name, payload.student_id, payload.role)
    return user.to_dict()


@app.get("/users/{user_id}")
def get_user(user_id: str):
    with _http_errors():
        return library.get_user(user_id).to_dict()


@app.get("/users/{user_id}/requests", response_model=List[RequestModel])
def user_history(user_id: str):
    """A user's requests, newest first."""
    with _http_errors():
        library.get_user(user_id)
    return [_request_out(r) for r in library.circulation.history(user_id)]


@app.get("/users/{user_id}/coins")
def user_coins(user_id: str):
    with _http_errors():
        balance = library.ledger.balance(user_id)
    return {
        "user_id": user_id,
        "coins": balance,
        "transactions": [t.to_dict() for t in library.ledger.transactions(user_id)],
    }


# --- Borrow requests ---
@app.post("/requests", response_model=RequestModel)
def create_request(payload: RequestCreateModel):
    with _http_errors():
        request = library.circulation.create_request(payload.user_id, payload.book_id)
    return _request_out(request)


@app.get("/requests", response_model=List[RequestModel])
def list_requests(status: Optional[str] = None, user_id: Optional[str] = None, book_id: Optional[str] = None):
    with _http_errors():
        wanted = RequestStatus(status) if status else None
        requests = library.circulation.list_requests(user_id=user_id, status=wanted, book_id=book_id)
    return [_request_out(r) for r in requests]


@app.get("/requests/{request_id}", response_model=RequestModel)
def get_request(request_id: str):
    with _http_errors():
        return _request_out(library.circulation.get_request(request_id))


@app.post("/requests/{request_id}/return", response_model=RequestModel)
def request_return(request_id: str):
    with _http_errors():
        return _request_out(library.circulation.request_return(request_id))


@app.post("/requests/{request_id}/approve", response_model=RequestModel, dependencies=[Depends(get_api_key)])
def approve_request(request_id: str):
    with _http_errors():
        return _request_out(library.circulation.approve_request(request_id))


@app.post("/requests/{request_id}/reject", response_model=RequestModel, dependencies=[Depends(get_api_key)])
def reject_request(request_id: str):
    with _http_errors():
        return _request_out(library.circulation.reject_request(request_id))


@app.post("/requests/{request_id}/confirm-return", response_model=RequestModel,
          dependencies=[Depends(get_api_key)])
def confirm_return(request_id: str):
    with _http_errors():
        return _request_out(library.circulation.confirm_return(request_id))


@app.post("/requests/{request_id}/deny-return", response_model=RequestModel, dependencies=[Depends(get_api_key)])
def deny_return(request_id: str):
    with _http_errors():
        return _request_out(library.circulation.deny_return(request_id))


@app.post("/issue", response_model=RequestModel, dependencies=[Depends(get_api_key)])
def manual_issue(payload: ManualIssueModel):
    """Issue a scanned copy directly to a student."""
    with _http_errors():
        return _request_out(library.circulation.manual_issue(payload.copy_id, payload.student_id))


@app.get("/loans/overdue", response_model=List[RequestModel], dependencies=[Depends(get_api_key)])
def list_overdue():
    return [_request_out(r) for r in library.circulation.list_overdue()]


# --- Reviews and coins ---
@app.post("/reviews")
def submit_review(payload: ReviewCreateModel):
    with _http_errors():
        review = library.ledger.submit_review(payload.user_id, payload.book_id, payload.type, payload.content,
                                              payload.rating)
    return review.to_dict()


@app.get("/reviews")
def list_reviews(status: Optional[str] = None, user_id: Optional[str] = None, book_id: Optional[str] = None):
    with _http_errors():
        wanted = ReviewStatus(status) if status else None
        reviews = library.ledger.list_reviews(status=wanted, user_id=user_id, book_id=book_id)
    return [r.to_dict() for r in reviews]


@app.post("/reviews/{review_id}/approve", dependencies=[Depends(get_api_key)])
def approve_review(review_id: str):
    with _http_errors():
        return library.ledger.approve_review(review_id).to_dict()


@app.post("/reviews/{review_id}/reject", dependencies=[Depends(get_api_key)])
def reject_review(review_id: str):
    with _http_errors():
        return library.ledger.reject_review(review_id).to_dict()


# --- Addition requests ---
@app.post("/addition-requests")
def request_addition(payload: AdditionCreateModel):
    with _http_errors():
        addition = library.request_addition(payload.user_id, payload.book_title, payload.author,
                                            payload.reference_link)
    return addition.to_dict()


@app.get("/addition-requests", dependencies=[Depends(get_api_key)])
def list_additions(status: Optional[str] = None):
    with _http_errors():
        return [a.to_dict() for a in library.list_addition_requests(status)]


@app.post("/addition-requests/{request_id}/approve", dependencies=[Depends(get_api_key)])
def approve_addition(request_id: str):
    with _http_errors():
        return library.approve_addition(request_id).to_dict()


@app.post("/addition-requests/{request_id}/reject", dependencies=[Depends(get_api_key)])
def reject_addition(request_id: str):
    with _http_errors():
        return library.reject_addition(request_id).to_dict()


@app.get("/books/{book_id}/inventory", dependencies=[Depends(get_api_key)])
def check_inventory(book_id: str):
    with _http_errors():
        return library.check_inventory(book_id)
