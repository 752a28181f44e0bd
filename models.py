"""Value objects handled by the circulation manager and the coin ledger.

Book lives in book.py because it carries the copy inventory; everything
here is a plain record that repositories store and hand back as copies.
"""
from __future__ import annotations

import enum
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept a datetime or an ISO string; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Role(str, enum.Enum):
    STUDENT = "student"
    ADMIN = "admin"


class RequestStatus(str, enum.Enum):
    """Lifecycle of a borrow request.

    pending -> approved | rejected
    approved -> return_requested
    return_requested -> returned | approved
    """
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURN_REQUESTED = "return_requested"
    RETURNED = "returned"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.REJECTED, RequestStatus.RETURNED)

    @property
    def holds_copy(self) -> bool:
        return self in (RequestStatus.APPROVED, RequestStatus.RETURN_REQUESTED)


class ReviewType(str, enum.Enum):
    REVIEW = "review"
    SUMMARY = "summary"


class ReviewStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AdditionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class User:
    name: str
    student_id: str
    role: Role = Role.STUDENT
    coins: int = 0
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["role"] = self.role.value
        data["created_at"] = _iso(self.created_at)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "User":
        return User(
            id=data["id"],
            name=data["name"],
            student_id=data["student_id"],
            role=Role(data.get("role") or Role.STUDENT.value),
            coins=int(data.get("coins") or 0),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
        )


@dataclass
class BookRequest:
    user_id: str
    book_id: str
    status: RequestStatus = RequestStatus.PENDING
    requested_at: datetime = field(default_factory=utcnow)
    issued_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    copy_id: Optional[str] = None
    id: str = field(default_factory=new_id)

    def is_overdue(self, now: datetime) -> bool:
        # Derived on every read, never stored
        return (
            self.status == RequestStatus.APPROVED
            and self.due_date is not None
            and now > self.due_date
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "status": self.status.value,
            "requested_at": _iso(self.requested_at),
            "issued_at": _iso(self.issued_at),
            "due_date": _iso(self.due_date),
            "returned_at": _iso(self.returned_at),
            "copy_id": self.copy_id,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BookRequest":
        return BookRequest(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            status=RequestStatus(data["status"]),
            requested_at=parse_timestamp(data.get("requested_at")) or utcnow(),
            issued_at=parse_timestamp(data.get("issued_at")),
            due_date=parse_timestamp(data.get("due_date")),
            returned_at=parse_timestamp(data.get("returned_at")),
            copy_id=data.get("copy_id"),
        )


@dataclass
class Review:
    user_id: str
    book_id: str
    type: ReviewType
    content: str
    coins_awarded: int
    rating: Optional[int] = None
    status: ReviewStatus = ReviewStatus.PENDING
    submitted_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "type": self.type.value,
            "content": self.content,
            "rating": self.rating,
            "status": self.status.value,
            "coins_awarded": self.coins_awarded,
            "submitted_at": _iso(self.submitted_at),
            "processed_at": _iso(self.processed_at),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Review":
        return Review(
            id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            type=ReviewType(data["type"]),
            content=data["content"],
            rating=data.get("rating"),
            status=ReviewStatus(data["status"]),
            coins_awarded=int(data["coins_awarded"]),
            submitted_at=parse_timestamp(data.get("submitted_at")) or utcnow(),
            processed_at=parse_timestamp(data.get("processed_at")),
        )


@dataclass
class CoinTransaction:
    user_id: str
    amount: int
    reason: str
    reference_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "CoinTransaction":
        return CoinTransaction(
            id=data["id"],
            user_id=data["user_id"],
            amount=int(data["amount"]),
            reason=data["reason"],
            reference_id=data.get("reference_id"),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
        )


@dataclass
class AdditionRequest:
    """A student's suggestion to add a title that the catalog lacks."""
    user_id: str
    book_title: str
    author: Optional[str] = None
    reference_link: Optional[str] = None
    status: AdditionStatus = AdditionStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = _iso(self.created_at)
        data["processed_at"] = _iso(self.processed_at)
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "AdditionRequest":
        return AdditionRequest(
            id=data["id"],
            user_id=data["user_id"],
            book_title=data["book_title"],
            author=data.get("author"),
            reference_link=data.get("reference_link"),
            status=AdditionStatus(data["status"]),
            created_at=parse_timestamp(data.get("created_at")) or utcnow(),
            processed_at=parse_timestamp(data.get("processed_at")),
        )
