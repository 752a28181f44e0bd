import logging
import math
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from book import Book
from config import settings
from errors import (AlreadyIssued, AlreadyProcessed, BookNotFound, BookUnavailable, CopyNotFound, EmptySet,
                    InvalidTransition, InventoryCorruptionError, NoCopyAvailable, RequestNotFound,
                    UserNotFound)
from models import BookRequest, RequestStatus, Role, User, utcnow
from repositories import Store
from validators import normalize_copy_id

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ACTIVE_STATUSES = (RequestStatus.PENDING, RequestStatus.APPROVED, RequestStatus.RETURN_REQUESTED)


class CirculationManager:
    """Moves borrow requests through request, approval, issuance and return.

    Holds no state of its own: every operation reads from and writes to the
    injected store inside one ``store.atomic()`` block, so two admins racing
    for the last copy of a title cannot both get it.
    """

    def __init__(self, store: Store, clock: Optional[Clock] = None, loan_days: Optional[int] = None,
                 due_soon_days: Optional[int] = None) -> None:
        self.store = store
        self.clock = clock or utcnow
        self.loan_period = timedelta(days=loan_days if loan_days is not None else settings.loan_period_days)
        self.due_soon_window = timedelta(
            days=due_soon_days if due_soon_days is not None else settings.due_soon_days
        )

    # ------------------------- Student actions ------------------------- #
    def create_request(self, user_id: str, book_id: str) -> BookRequest:
        """Open a pending request. Availability is checked again at approval."""
        with self.store.atomic():
            self._require_user(user_id)
            book = self._require_book(book_id)
            if book.available_count == 0:
                logger.warning("Request for book %s refused: no copy on the shelf", book_id)
                raise BookUnavailable(book_id)

            for existing in self.store.requests.list(user_id=user_id, book_id=book_id):
                if existing.status in ACTIVE_STATUSES:
                    raise InvalidTransition("book", book_id, f"already {existing.status.value} for this user",
                                            "request")

            request = BookRequest(user_id=user_id, book_id=book_id, requested_at=self.clock())
            self.store.requests.add(request)

        logger.info("Request %s created: user %s wants book %s", request.id, user_id, book_id)
        return request

    def request_return(self, request_id: str) -> BookRequest:
        """Student says the book is back; an admin still has to confirm it."""
        with self.store.atomic():
            request = self._require_request(request_id)
            self._expect(request, RequestStatus.APPROVED, "request return of")
            request.status = RequestStatus.RETURN_REQUESTED
            self.store.requests.save(request)

        logger.info("Request %s: return requested for copy %s", request.id, request.copy_id)
        return request

    # ------------------------- Admin actions ------------------------- #
    def approve_request(self, request_id: str) -> BookRequest:
        with self.store.atomic():
            request = self._require_request(request_id)
            self._expect(request, RequestStatus.PENDING, "approve")
            book = self._require_book(request.book_id)
            try:
                copy_id = book.inventory.take()
            except EmptySet:
                logger.warning("Request %s not approved: book %s has no copy left", request.id, book.id)
                raise NoCopyAvailable(book.id) from None

            self._issue(request, copy_id)
            self.store.books.save(book)
            self.store.requests.save(request)

        logger.info("Request %s approved: copy %s due %s", request.id, request.copy_id, request.due_date)
        return request

    def reject_request(self, request_id: str) -> BookRequest:
        with self.store.atomic():
            request = self._require_request(request_id)
            self._expect(request, RequestStatus.PENDING, "reject")
            request.status = RequestStatus.REJECTED
            self.store.requests.save(request)

        logger.info("Request %s rejected", request.id)
        return request

    def confirm_return(self, request_id: str) -> BookRequest:
        with self.store.atomic():
            request = self._require_request(request_id)
            self._expect(request, RequestStatus.RETURN_REQUESTED, "confirm return of")
            book = self._require_book(request.book_id)
            if request.copy_id is None:
                raise InventoryCorruptionError(f"Request {request.id} is on loan without a copy id.")

            book.inventory.give(request.copy_id)
            if book.available_count > book.total_count:
                raise InventoryCorruptionError(f"Book {book.id} would have more free copies than it owns.")
            request.status = RequestStatus.RETURNED
            request.returned_at = self.clock()
            self.store.books.save(book)
            self.store.requests.save(request)

        logger.info("Request %s returned: copy %s back on the shelf", request.id, request.copy_id)
        return request

    def deny_return(self, request_id: str) -> BookRequest:
        """Admin did not receive the book; the loan stays open."""
        with self.store.atomic():
            request = self._require_request(request_id)
            self._expect(request, RequestStatus.RETURN_REQUESTED, "deny return of")
            request.status = RequestStatus.APPROVED
            self.store.requests.save(request)

        logger.info("Request %s: return denied, copy %s remains out", request.id, request.copy_id)
        return request

    def manual_issue(self, copy_id: str, student_id: str) -> BookRequest:
        """Hand a scanned copy straight to a student, skipping the pending step.

        ``student_id`` may be the user's internal id or their school id; the
        user must have the student role.
        """
        copy_id = normalize_copy_id(copy_id)
        with self.store.atomic():
            book = self.store.books.find_by_free_copy(copy_id)
            holder = None if book else self.store.requests.find_holding_copy(copy_id)
            if book is None and holder is None:
                raise CopyNotFound(copy_id)

            user = self.store.users.get(student_id) or self.store.users.find_by_student_id(student_id)
            if user is None:
                raise UserNotFound(student_id)
            if user.role != Role.STUDENT:
                logger.warning("Manual issue of copy %s refused: user %s is %s", copy_id, user.id, user.role.value)
                raise UserNotFound(student_id, f"Student {student_id} not found; only students can borrow.")

            if book is None:
                logger.warning("Manual issue of copy %s refused: held by request %s", copy_id, holder.id)
                raise AlreadyIssued(copy_id)

            book.inventory.take_copy(copy_id)
            request = BookRequest(user_id=user.id, book_id=book.id, requested_at=self.clock())
            self._issue(request, copy_id)
            self.store.books.save(book)
            self.store.requests.add(request)

        logger.info("Copy %s issued manually to user %s as request %s", copy_id, user.id, request.id)
        return request

    # ------------------------- Reads ------------------------- #
    def get_request(self, request_id: str) -> BookRequest:
        return self._require_request(request_id)

    def list_requests(self, user_id: Optional[str] = None, status: Optional[RequestStatus] = None,
                      book_id: Optional[str] = None) -> List[BookRequest]:
        return self.store.requests.list(user_id=user_id, book_id=book_id, status=status)

    def history(self, user_id: Optional[str] = None) -> List[BookRequest]:
        """Every request, newest first."""
        return list(reversed(self.store.requests.list(user_id=user_id)))

    def outstanding_loans(self, book_id: Optional[str] = None) -> List[BookRequest]:
        """Requests currently holding a copy (approved or awaiting return confirmation)."""
        return [r for r in self.store.requests.list(book_id=book_id) if r.status.holds_copy]

    def is_overdue(self, request: BookRequest, now: Optional[datetime] = None) -> bool:
        return request.is_overdue(now or self.clock())

    def days_overdue(self, request: BookRequest, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        if not request.is_overdue(now):
            return 0
        # A partial day past due counts as a whole day
        return math.ceil((now - request.due_date) / timedelta(days=1))

    def loan_status(self, request: BookRequest, now: Optional[datetime] = None) -> str:
        """Display label for a request: overdue, due-today, due-soon, on-loan or its status."""
        now = now or self.clock()
        if request.status != RequestStatus.APPROVED or request.due_date is None:
            return request.status.value
        if request.is_overdue(now):
            return "overdue"
        if request.due_date.date() == now.date():
            return "due-today"
        if request.due_date - now <= self.due_soon_window:
            return "due-soon"
        return "on-loan"

    def list_overdue(self, now: Optional[datetime] = None) -> List[BookRequest]:
        now = now or self.clock()
        return [r for r in self.store.requests.list(status=RequestStatus.APPROVED) if r.is_overdue(now)]

    # ------------------------- Helpers ------------------------- #
    def _issue(self, request: BookRequest, copy_id: str) -> None:
        # Due date is fixed here and never recalculated
        now = self.clock()
        request.status = RequestStatus.APPROVED
        request.copy_id = copy_id
        request.issued_at = now
        request.due_date = now + self.loan_period

    @staticmethod
    def _expect(request: BookRequest, expected: RequestStatus, action: str) -> None:
        if request.status == expected:
            return
        error = AlreadyProcessed if request.status.is_terminal else InvalidTransition
        logger.warning("Cannot %s request %s: status is %s", action, request.id, request.status.value)
        raise error("request", request.id, request.status.value, action)

    def _require_request(self, request_id: str) -> BookRequest:
        request = self.store.requests.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def _require_book(self, book_id: str) -> Book:
        book = self.store.books.get(book_id)
        if book is None:
            raise BookNotFound(book_id)
        return book

    def _require_user(self, user_id: str) -> User:
        user = self.store.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user
