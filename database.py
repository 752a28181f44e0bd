import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence

from book import Book
from config import settings
from models import (AdditionRequest, AdditionStatus, BookRequest, CoinTransaction, RequestStatus,
                    Review, ReviewStatus, Role, User, utcnow)
from repositories import (AdditionRequestRepository, BookRepository, CoinTransactionRepository,
                          RequestRepository, ReviewRepository, Store, UserRepository)

logger = logging.getLogger(__name__)

# Default database file; tests override it per case
DATABASE_FILE = settings.data_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are opened explicitly."""
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=30,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    # WAL lets readers continue while a writer holds the lock
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def create_tables(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they do not exist yet."""
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            category TEXT NOT NULL DEFAULT '',
            total_count INTEGER NOT NULL DEFAULT 0,
            available_count INTEGER NOT NULL DEFAULT 0,
            available_copy_ids TEXT NOT NULL DEFAULT '[]',
            copy_sequence INTEGER NOT NULL DEFAULT 0,
            created_at TEXT,
            CHECK (available_count >= 0 AND available_count <= total_count)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            student_id TEXT UNIQUE NOT NULL,
            role TEXT NOT NULL DEFAULT 'student' CHECK (role IN ('student', 'admin')),
            coins INTEGER NOT NULL DEFAULT 0 CHECK (coins >= 0),
            created_at TEXT
        )
    """)

    # Borrow requests are never deleted; they are the loan history
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_requests (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            status TEXT NOT NULL,
            requested_at TEXT NOT NULL,
            issued_at TEXT,
            due_date TEXT,
            returned_at TEXT,
            copy_id TEXT,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS reviews (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            book_id TEXT NOT NULL,
            type TEXT NOT NULL CHECK (type IN ('review', 'summary')),
            content TEXT NOT NULL,
            rating INTEGER CHECK (rating IS NULL OR (rating >= 1 AND rating <= 5)),
            status TEXT NOT NULL,
            coins_awarded INTEGER NOT NULL,
            submitted_at TEXT NOT NULL,
            processed_at TEXT,
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (book_id) REFERENCES books(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS coin_transactions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            amount INTEGER NOT NULL,
            reason TEXT NOT NULL,
            reference_id TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS addition_requests (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            book_title TEXT NOT NULL,
            author TEXT,
            reference_link TEXT,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            processed_at TEXT,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_requests_user ON book_requests(user_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_requests_book_status ON book_requests(book_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_requests_copy ON book_requests(copy_id)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_reviews_status ON reviews(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user ON coin_transactions(user_id)")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _where(filters: Sequence[tuple]) -> tuple:
    """Build a WHERE clause from (column, value) pairs, skipping None values."""
    clauses, params = [], []
    for column, value in filters:
        if value is None:
            continue
        clauses.append(f"{column} = ?")
        params.append(value.value if hasattr(value, "value") else value)
    sql = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    return sql, params


class _SqliteRepository:
    def __init__(self, store: "SqliteStore") -> None:
        self._store = store

    def _one(self, sql: str, params: Sequence[Any]) -> Optional[dict]:
        rows = self._store.query(sql, params)
        return dict(rows[0]) if rows else None

    def _many(self, sql: str, params: Sequence[Any]) -> List[dict]:
        return [dict(row) for row in self._store.query(sql, params)]


class SqliteBookRepository(_SqliteRepository, BookRepository):
    _columns = "id, title, author, category, total_count, available_count, available_copy_ids, copy_sequence, created_at"

    def get(self, book_id: str) -> Optional[Book]:
        row = self._one(f"SELECT {self._columns} FROM books WHERE id = ?", (book_id,))
        return Book.from_dict(row) if row else None

    def add(self, book: Book) -> None:
        if book.created_at is None:
            book.created_at = utcnow().isoformat()
        try:
            self._store.execute(
                f"INSERT INTO books ({self._columns}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (book.id, book.title, book.author, book.category, book.total_count, book.available_count,
                 json.dumps(book.available_copy_ids), book.copy_sequence, book.created_at),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book {book.id} already exists.") from e

    def save(self, book: Book) -> None:
        cursor = self._store.execute(
            """
            UPDATE books SET title = ?, author = ?, category = ?, total_count = ?, available_count = ?,
                   available_copy_ids = ?, copy_sequence = ?
            WHERE id = ?
            """,
            (book.title, book.author, book.category, book.total_count, book.available_count,
             json.dumps(book.available_copy_ids), book.copy_sequence, book.id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Book {book.id} does not exist.")

    def list(self, category: Optional[str] = None) -> List[Book]:
        sql = f"SELECT {self._columns} FROM books"
        params: list = []
        if category:
            sql += " WHERE category = ? COLLATE NOCASE"
            params.append(category)
        sql += " ORDER BY title COLLATE NOCASE"
        return [Book.from_dict(row) for row in self._many(sql, params)]

    def find_by_free_copy(self, copy_id: str) -> Optional[Book]:
        # LIKE narrows the scan; the JSON list is checked exactly afterwards
        rows = self._many(
            f"SELECT {self._columns} FROM books WHERE available_copy_ids LIKE ?",
            (f'%{json.dumps(copy_id)}%',),
        )
        for row in rows:
            book = Book.from_dict(row)
            if copy_id in book.inventory:
                return book
        return None


class SqliteUserRepository(_SqliteRepository, UserRepository):
    def get(self, user_id: str) -> Optional[User]:
        row = self._one("SELECT * FROM users WHERE id = ?", (user_id,))
        return User.from_dict(row) if row else None

    def find_by_student_id(self, student_id: str) -> Optional[User]:
        row = self._one("SELECT * FROM users WHERE student_id = ?", (student_id,))
        return User.from_dict(row) if row else None

    def add(self, user: User) -> None:
        try:
            self._store.execute(
                "INSERT INTO users (id, name, student_id, role, coins, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (user.id, user.name, user.student_id, user.role.value, user.coins, _iso(user.created_at)),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Student id {user.student_id} is already registered.") from e

    def save(self, user: User) -> None:
        cursor = self._store.execute(
            "UPDATE users SET name = ?, student_id = ?, role = ?, coins = ? WHERE id = ?",
            (user.name, user.student_id, user.role.value, user.coins, user.id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"User {user.id} does not exist.")

    def list(self, role: Optional[Role] = None) -> List[User]:
        where, params = _where([("role", role)])
        rows = self._many(f"SELECT * FROM users{where} ORDER BY created_at, rowid", params)
        return [User.from_dict(row) for row in rows]


class SqliteRequestRepository(_SqliteRepository, RequestRepository):
    def get(self, request_id: str) -> Optional[BookRequest]:
        row = self._one("SELECT * FROM book_requests WHERE id = ?", (request_id,))
        return BookRequest.from_dict(row) if row else None

    def add(self, request: BookRequest) -> None:
        self._store.execute(
            """
            INSERT INTO book_requests (id, user_id, book_id, status, requested_at, issued_at, due_date, returned_at, copy_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (request.id, request.user_id, request.book_id, request.status.value, _iso(request.requested_at),
             _iso(request.issued_at), _iso(request.due_date), _iso(request.returned_at), request.copy_id),
        )

    def save(self, request: BookRequest) -> None:
        cursor = self._store.execute(
            """
            UPDATE book_requests SET status = ?, issued_at = ?, due_date = ?, returned_at = ?, copy_id = ?
            WHERE id = ?
            """,
            (request.status.value, _iso(request.issued_at), _iso(request.due_date), _iso(request.returned_at),
             request.copy_id, request.id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Request {request.id} does not exist.")

    def list(self, user_id: Optional[str] = None, book_id: Optional[str] = None,
             status: Optional[RequestStatus] = None) -> List[BookRequest]:
        where, params = _where([("user_id", user_id), ("book_id", book_id), ("status", status)])
        rows = self._many(f"SELECT * FROM book_requests{where} ORDER BY requested_at, rowid", params)
        return [BookRequest.from_dict(row) for row in rows]

    def find_holding_copy(self, copy_id: str) -> Optional[BookRequest]:
        row = self._one(
            "SELECT * FROM book_requests WHERE copy_id = ? AND status IN (?, ?)",
            (copy_id, RequestStatus.APPROVED.value, RequestStatus.RETURN_REQUESTED.value),
        )
        return BookRequest.from_dict(row) if row else None


class SqliteReviewRepository(_SqliteRepository, ReviewRepository):
    def get(self, review_id: str) -> Optional[Review]:
        row = self._one("SELECT * FROM reviews WHERE id = ?", (review_id,))
        return Review.from_dict(row) if row else None

    def add(self, review: Review) -> None:
        self._store.execute(
            """
            INSERT INTO reviews (id, user_id, book_id, type, content, rating, status, coins_awarded, submitted_at, processed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (review.id, review.user_id, review.book_id, review.type.value, review.content, review.rating,
             review.status.value, review.coins_awarded, _iso(review.submitted_at), _iso(review.processed_at)),
        )

    def save(self, review: Review) -> None:
        cursor = self._store.execute(
            "UPDATE reviews SET content = ?, rating = ?, status = ?, processed_at = ? WHERE id = ?",
            (review.content, review.rating, review.status.value, _iso(review.processed_at), review.id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Review {review.id} does not exist.")

    def list(self, status: Optional[ReviewStatus] = None, user_id: Optional[str] = None,
             book_id: Optional[str] = None) -> List[Review]:
        where, params = _where([("status", status), ("user_id", user_id), ("book_id", book_id)])
        rows = self._many(f"SELECT * FROM reviews{where} ORDER BY submitted_at, rowid", params)
        return [Review.from_dict(row) for row in rows]


class SqliteCoinTransactionRepository(_SqliteRepository, CoinTransactionRepository):
    def add(self, transaction: CoinTransaction) -> None:
        self._store.execute(
            "INSERT INTO coin_transactions (id, user_id, amount, reason, reference_id, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (transaction.id, transaction.user_id, transaction.amount, transaction.reason,
             transaction.reference_id, _iso(transaction.created_at)),
        )

    def list(self, user_id: Optional[str] = None) -> List[CoinTransaction]:
        where, params = _where([("user_id", user_id)])
        rows = self._many(f"SELECT * FROM coin_transactions{where} ORDER BY created_at, rowid", params)
        return [CoinTransaction.from_dict(row) for row in rows]


class SqliteAdditionRequestRepository(_SqliteRepository, AdditionRequestRepository):
    def get(self, request_id: str) -> Optional[AdditionRequest]:
        row = self._one("SELECT * FROM addition_requests WHERE id = ?", (request_id,))
        return AdditionRequest.from_dict(row) if row else None

    def add(self, request: AdditionRequest) -> None:
        self._store.execute(
            """
            INSERT INTO addition_requests (id, user_id, book_title, author, reference_link, status, created_at, processed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (request.id, request.user_id, request.book_title, request.author, request.reference_link,
             request.status.value, _iso(request.created_at), _iso(request.processed_at)),
        )

    def save(self, request: AdditionRequest) -> None:
        cursor = self._store.execute(
            "UPDATE addition_requests SET status = ?, processed_at = ? WHERE id = ?",
            (request.status.value, _iso(request.processed_at), request.id),
        )
        if cursor.rowcount == 0:
            raise LookupError(f"Addition request {request.id} does not exist.")

    def list(self, status: Optional[AdditionStatus] = None) -> List[AdditionRequest]:
        where, params = _where([("status", status)])
        rows = self._many(f"SELECT * FROM addition_requests{where} ORDER BY created_at, rowid", params)
        return [AdditionRequest.from_dict(row) for row in rows]


class SqliteStore(Store):
    """Store backed by one sqlite connection.

    The connection runs in autocommit mode; ``atomic()`` wraps its block in
    BEGIN IMMEDIATE so the write lock is taken before the first read, and a
    re-entrant lock serializes threads sharing this store.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file or DATABASE_FILE
        self.lock = threading.RLock()
        self._depth = 0
        self._conn = get_db_connection(self.db_file)
        create_tables(self._conn)
        logger.debug("sqlite store opened at %s", self.db_file)

        self.books = SqliteBookRepository(self)
        self.users = SqliteUserRepository(self)
        self.requests = SqliteRequestRepository(self)
        self.reviews = SqliteReviewRepository(self)
        self.transactions = SqliteCoinTransactionRepository(self)
        self.additions = SqliteAdditionRequestRepository(self)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self.lock:
            return self._conn.execute(sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self.lock:
            return self._conn.execute(sql, params).fetchall()

    @contextmanager
    def atomic(self) -> Iterator["SqliteStore"]:
        with self.lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._conn.execute("ROLLBACK")
                raise
            else:
                if outermost:
                    try:
                        self._conn.execute("COMMIT")
                    except sqlite3.Error:
                        # A failed COMMIT can leave the transaction open
                        if self._conn.in_transaction:
                            self._conn.execute("ROLLBACK")
                        raise
            finally:
                self._depth -= 1

    def close(self) -> None:
        with self.lock:
            self._conn.close()
