"""Repository interfaces injected into the circulation manager and ledger.

Repositories hand out copies: callers mutate what they got and ``save()`` it
back, always inside ``Store.atomic()`` when the change depends on a prior
read. The in-memory store here backs the unit tests; database.py provides
the sqlite one.
"""
import copy
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from book import Book
from models import (AdditionRequest, AdditionStatus, BookRequest, CoinTransaction, RequestStatus,
                    Review, ReviewStatus, Role, User)


class BookRepository(ABC):
    @abstractmethod
    def get(self, book_id: str) -> Optional[Book]: ...

    @abstractmethod
    def add(self, book: Book) -> None: ...

    @abstractmethod
    def save(self, book: Book) -> None: ...

    @abstractmethod
    def list(self, category: Optional[str] = None) -> List[Book]: ...

    @abstractmethod
    def find_by_free_copy(self, copy_id: str) -> Optional[Book]:
        """Return the book whose shelf currently holds ``copy_id``."""


class UserRepository(ABC):
    @abstractmethod
    def get(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def find_by_student_id(self, student_id: str) -> Optional[User]: ...

    @abstractmethod
    def add(self, user: User) -> None: ...

    @abstractmethod
    def save(self, user: User) -> None: ...

    @abstractmethod
    def list(self, role: Optional[Role] = None) -> List[User]: ...


class RequestRepository(ABC):
    @abstractmethod
    def get(self, request_id: str) -> Optional[BookRequest]: ...

    @abstractmethod
    def add(self, request: BookRequest) -> None: ...

    @abstractmethod
    def save(self, request: BookRequest) -> None: ...

    @abstractmethod
    def list(self, user_id: Optional[str] = None, book_id: Optional[str] = None,
             status: Optional[RequestStatus] = None) -> List[BookRequest]:
        """Requests matching every given filter, oldest first."""

    @abstractmethod
    def find_holding_copy(self, copy_id: str) -> Optional[BookRequest]:
        """Return the approved or return-requested request that holds ``copy_id``."""


class ReviewRepository(ABC):
    @abstractmethod
    def get(self, review_id: str) -> Optional[Review]: ...

    @abstractmethod
    def add(self, review: Review) -> None: ...

    @abstractmethod
    def save(self, review: Review) -> None: ...

    @abstractmethod
    def list(self, status: Optional[ReviewStatus] = None, user_id: Optional[str] = None,
             book_id: Optional[str] = None) -> List[Review]: ...


class CoinTransactionRepository(ABC):
    @abstractmethod
    def add(self, transaction: CoinTransaction) -> None: ...

    @abstractmethod
    def list(self, user_id: Optional[str] = None) -> List[CoinTransaction]: ...


class AdditionRequestRepository(ABC):
    @abstractmethod
    def get(self, request_id: str) -> Optional[AdditionRequest]: ...

    @abstractmethod
    def add(self, request: AdditionRequest) -> None: ...

    @abstractmethod
    def save(self, request: AdditionRequest) -> None: ...

    @abstractmethod
    def list(self, status: Optional[AdditionStatus] = None) -> List[AdditionRequest]: ...


class Store(ABC):
    """Bundle of repositories sharing one unit of work."""

    books: BookRepository
    users: UserRepository
    requests: RequestRepository
    reviews: ReviewRepository
    transactions: CoinTransactionRepository
    additions: AdditionRequestRepository

    @abstractmethod
    def atomic(self):
        """Context manager: everything inside commits together or not at all.

        Re-entrant; only the outermost block commits or rolls back.
        """

    def close(self) -> None:
        return None


# ------------------------- In-memory implementation ------------------------- #
class _MemoryTable:
    def __init__(self, store: "InMemoryStore") -> None:
        self._store = store
        self._rows: Dict[str, object] = {}

    def _get(self, key: str):
        with self._store.lock:
            row = self._rows.get(key)
            return copy.deepcopy(row) if row is not None else None

    def _insert(self, key: str, row) -> None:
        with self._store.lock:
            if key in self._rows:
                raise ValueError(f"Record {key} already exists.")
            self._rows[key] = copy.deepcopy(row)

    def _update(self, key: str, row) -> None:
        with self._store.lock:
            if key not in self._rows:
                raise LookupError(f"Record {key} does not exist.")
            self._rows[key] = copy.deepcopy(row)

    def _all(self) -> list:
        with self._store.lock:
            return [copy.deepcopy(row) for row in self._rows.values()]


class InMemoryBookRepository(_MemoryTable, BookRepository):
    def get(self, book_id: str) -> Optional[Book]:
        return self._get(book_id)

    def add(self, book: Book) -> None:
        self._insert(book.id, book)

    def save(self, book: Book) -> None:
        self._update(book.id, book)

    def list(self, category: Optional[str] = None) -> List[Book]:
        books = self._all()
        if category:
            books = [b for b in books if b.category.lower() == category.lower()]
        return sorted(books, key=lambda b: b.title.lower())

    def find_by_free_copy(self, copy_id: str) -> Optional[Book]:
        with self._store.lock:
            for book in self._rows.values():
                if copy_id in book.inventory:
                    return copy.deepcopy(book)
        return None


class InMemoryUserRepository(_MemoryTable, UserRepository):
    def get(self, user_id: str) -> Optional[User]:
        return self._get(user_id)

    def find_by_student_id(self, student_id: str) -> Optional[User]:
        for user in self._all():
            if user.student_id == student_id:
                return user
        return None

    def add(self, user: User) -> None:
        with self._store.lock:
            if self.find_by_student_id(user.student_id):
                raise ValueError(f"Student id {user.student_id} is already registered.")
            self._insert(user.id, user)

    def save(self, user: User) -> None:
        self._update(user.id, user)

    def list(self, role: Optional[Role] = None) -> List[User]:
        users = [u for u in self._all() if role is None or u.role == role]
        return sorted(users, key=lambda u: u.created_at)


class InMemoryRequestRepository(_MemoryTable, RequestRepository):
    def get(self, request_id: str) -> Optional[BookRequest]:
        return self._get(request_id)

    def add(self, request: BookRequest) -> None:
        self._insert(request.id, request)

    def save(self, request: BookRequest) -> None:
        self._update(request.id, request)

    def list(self, user_id: Optional[str] = None, book_id: Optional[str] = None,
             status: Optional[RequestStatus] = None) -> List[BookRequest]:
        matches = [
            r for r in self._all()
            if (user_id is None or r.user_id == user_id)
            and (book_id is None or r.book_id == book_id)
            and (status is None or r.status == status)
        ]
        return sorted(matches, key=lambda r: r.requested_at)

    def find_holding_copy(self, copy_id: str) -> Optional[BookRequest]:
        for request in self._all():
            if request.copy_id == copy_id and request.status.holds_copy:
                return request
        return None


class InMemoryReviewRepository(_MemoryTable, ReviewRepository):
    def get(self, review_id: str) -> Optional[Review]:
        return self._get(review_id)

    def add(self, review: Review) -> None:
        self._insert(review.id, review)

    def save(self, review: Review) -> None:
        self._update(review.id, review)

    def list(self, status: Optional[ReviewStatus] = None, user_id: Optional[str] = None,
             book_id: Optional[str] = None) -> List[Review]:
        matches = [
            r for r in self._all()
            if (status is None or r.status == status)
            and (user_id is None or r.user_id == user_id)
            and (book_id is None or r.book_id == book_id)
        ]
        return sorted(matches, key=lambda r: r.submitted_at)


class InMemoryCoinTransactionRepository(_MemoryTable, CoinTransactionRepository):
    def add(self, transaction: CoinTransaction) -> None:
        self._insert(transaction.id, transaction)

    def list(self, user_id: Optional[str] = None) -> List[CoinTransaction]:
        matches = [t for t in self._all() if user_id is None or t.user_id == user_id]
        return sorted(matches, key=lambda t: t.created_at)


class InMemoryAdditionRequestRepository(_MemoryTable, AdditionRequestRepository):
    def get(self, request_id: str) -> Optional[AdditionRequest]:
        return self._get(request_id)

    def add(self, request: AdditionRequest) -> None:
        self._insert(request.id, request)

    def save(self, request: AdditionRequest) -> None:
        self._update(request.id, request)

    def list(self, status: Optional[AdditionStatus] = None) -> List[AdditionRequest]:
        matches = [r for r in self._all() if status is None or r.status == status]
        return sorted(matches, key=lambda r: r.created_at)


class InMemoryStore(Store):
    """Process-local store; ``atomic()`` snapshots every table and restores it on error."""

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._depth = 0
        self.books = InMemoryBookRepository(self)
        self.users = InMemoryUserRepository(self)
        self.requests = InMemoryRequestRepository(self)
        self.reviews = InMemoryReviewRepository(self)
        self.transactions = InMemoryCoinTransactionRepository(self)
        self.additions = InMemoryAdditionRequestRepository(self)

    def _tables(self) -> List[_MemoryTable]:
        return [self.books, self.users, self.requests, self.reviews, self.transactions, self.additions]

    @contextmanager
    def atomic(self) -> Iterator["InMemoryStore"]:
        with self.lock:
            snapshot = None
            if self._depth == 0:
                snapshot = [copy.deepcopy(table._rows) for table in self._tables()]
            self._depth += 1
            try:
                yield self
            except BaseException:
                if snapshot is not None:
                    for table, rows in zip(self._tables(), snapshot):
                        table._rows = rows
                raise
            finally:
                self._depth -= 1
