import logging
from typing import Any, Dict, List, Optional

from book import Book
from circulation import CirculationManager
from database import SqliteStore
from errors import AdditionRequestNotFound, AlreadyProcessed, BookNotFound, InventoryCorruptionError, UserNotFound
from inventory import generate_copy_ids
from ledger import CoinLedger
from models import AdditionRequest, AdditionStatus, Role, User, new_id, utcnow
from config import settings
from repositories import Store
from validators import TextValidator, validate_quantity

logger = logging.getLogger(__name__)


class Library:
    """Catalog, user registry and circulation desk on top of one store."""

    def __init__(self, db_file: Optional[str] = None, store: Optional[Store] = None, clock=None) -> None:
        # An explicit store wins; otherwise open the sqlite database
        self.store = store if store is not None else SqliteStore(db_file)
        self.clock = clock or utcnow
        self.circulation = CirculationManager(self.store, clock=self.clock)
        self.ledger = CoinLedger(self.store, clock=self.clock)

    # ------------------------- Catalog ------------------------- #
    def add_book(self, title: str, author: str, category: str = "", quantity: int = 1) -> Book:
        """Add a title with ``quantity`` freshly numbered copies, all on the shelf."""
        if not TextValidator.validate_title(title):
            raise ValueError("Title cannot be empty.")
        if not TextValidator.validate_author(author):
            raise ValueError("Author cannot be empty.")
        validate_quantity(quantity)

        book_id = new_id()
        book = Book(
            id=book_id,
            title=title,
            author=author,
            category=category,
            total_count=quantity,
            available_copy_ids=generate_copy_ids(title, book_id, quantity),
            copy_sequence=quantity,
            created_at=self.clock().isoformat(),
        )
        with self.store.atomic():
            self._ensure_unused(book.available_copy_ids)
            self.store.books.add(book)

        logger.info("Book %s added: %s (%d copies)", book.id, book.title, quantity)
        return book

    def add_copies(self, book_id: str, quantity: int) -> Book:
        """Register more physical copies of an existing title."""
        validate_quantity(quantity)
        with self.store.atomic():
            book = self.get_book(book_id)
            new_ids = generate_copy_ids(book.title, book.id, quantity, start=book.copy_sequence + 1)
            self._ensure_unused(new_ids)
            for copy_id in new_ids:
                book.inventory.give(copy_id)
            book.total_count += quantity
            book.copy_sequence += quantity
            self.store.books.save(book)

        logger.info("Book %s: %d copies added (%d total)", book.id, quantity, book.total_count)
        return book

    def get_book(self, book_id: str) -> Book:
        book = self.store.books.get(book_id)
        if book is None:
            raise BookNotFound(book_id)
        return book

    def find_book(self, book_id: str) -> Optional[Book]:
        return self.store.books.get(book_id)

    def list_books(self, category: Optional[str] = None) -> List[Book]:
        return self.store.books.list(category=category)

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title, author or category."""
        needle = (query or "").strip().lower()
        if not needle:
            return self.list_books()
        return [
            b for b in self.list_books()
            if needle in b.title.lower() or needle in b.author.lower() or needle in b.category.lower()
        ]

    def list_categories(self) -> List[str]:
        return sorted({b.category for b in self.list_books() if b.category}, key=str.lower)

    def update_book(self, book_id: str, *, title: Optional[str] = None, author: Optional[str] = None,
                    category: Optional[str] = None) -> Optional[Book]:
        """Update descriptive fields of a book. Returns the updated book or None if not found."""
        if title is None and author is None and category is None:
            raise ValueError("Nothing to update. Provide title, author and/or category.")

        with self.store.atomic():
            book = self.find_book(book_id)
            if not book:
                return None
            if title is not None and title.strip():
                book.title = title.strip()
            if author is not None and author.strip():
                book.author = author.strip()
            if category is not None:
                book.category = category.strip()
            self.store.books.save(book)
        return book

    def check_inventory(self, book_id: str) -> Dict[str, Any]:
        """Verify copy accounting for one title and return the counts."""
        book = self.get_book(book_id)
        loans = self.circulation.outstanding_loans(book_id=book_id)
        on_loan = {r.copy_id for r in loans}

        if book.available_count + len(loans) != book.total_count:
            raise InventoryCorruptionError(
                f"Book {book_id}: {book.available_count} free + {len(loans)} on loan != {book.total_count} total."
            )
        if len(on_loan) != len(loans) or on_loan & set(book.available_copy_ids):
            raise InventoryCorruptionError(f"Book {book_id}: a copy is both on loan and on the shelf.")

        return {
            "book_id": book.id,
            "total_count": book.total_count,
            "available_count": book.available_count,
            "on_loan": len(loans),
        }

    def _ensure_unused(self, copy_ids: List[str]) -> None:
        for copy_id in copy_ids:
            if self.store.books.find_by_free_copy(copy_id) or self.store.requests.find_holding_copy(copy_id):
                raise ValueError(f"Copy id {copy_id} is already in use.")

    # ------------------------- Users ------------------------- #
    def register_user(self, name: str, student_id: str, role: str = Role.STUDENT.value) -> User:
        if not TextValidator.validate_author(name):
            raise ValueError("Name cannot be empty.")
        student_id = (student_id or "").strip()
        if not student_id:
            raise ValueError("Student id cannot be empty.")
        try:
            user_role = Role(role)
        except ValueError:
            raise ValueError(f"Unknown role: {role!r}. Use 'student' or 'admin'.") from None

        user = User(name=name.strip(), student_id=student_id, role=user_role, coins=settings.starting_coins,
                    created_at=self.clock())
        self.store.users.add(user)
        logger.info("User %s registered as %s", user.id, user.role.value)
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def find_user_by_student_id(self, student_id: str) -> Optional[User]:
        return self.store.users.find_by_student_id(student_id)

    def list_users(self, role: Optional[str] = None) -> List[User]:
        return self.store.users.list(role=Role(role) if role else None)

    # ------------------------- Addition requests ------------------------- #
    def request_addition(self, user_id: str, book_title: str, author: Optional[str] = None,
                         reference_link: Optional[str] = None) -> AdditionRequest:
        """A student asks for a title the catalog does not have yet."""
        if not TextValidator.validate_title(book_title):
            raise ValueError("Book title cannot be empty.")
        self.get_user(user_id)
        request = AdditionRequest(
            user_id=user_id,
            book_title=book_title.strip(),
            author=author.strip() if author else None,
            reference_link=reference_link.strip() if reference_link else None,
            created_at=self.clock(),
        )
        self.store.additions.add(request)
        logger.info("Addition request %s: %s", request.id, request.book_title)
        return request

    def approve_addition(self, request_id: str) -> AdditionRequest:
        return self._decide_addition(request_id, AdditionStatus.APPROVED, "approve")

    def reject_addition(self, request_id: str) -> AdditionRequest:
        return self._decide_addition(request_id, AdditionStatus.REJECTED, "reject")

    def list_addition_requests(self, status: Optional[str] = None) -> List[AdditionRequest]:
        return self.store.additions.list(status=AdditionStatus(status) if status else None)

    def _decide_addition(self, request_id: str, status: AdditionStatus, action: str) -> AdditionRequest:
        with self.store.atomic():
            request = self.store.additions.get(request_id)
            if request is None:
                raise AdditionRequestNotFound(request_id)
            if request.status != AdditionStatus.PENDING:
                raise AlreadyProcessed("addition request", request.id, request.status.value, action)
            request.status = status
            request.processed_at = self.clock()
            self.store.additions.save(request)

        logger.info("Addition request %s %s", request.id, status.value)
        return request

    def close(self) -> None:
        self.store.close()
