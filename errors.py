"""Typed failures raised by the circulation, inventory and coin ledger code.

Every business-rule violation surfaces as one of these so the calling
surface (API, CLI) can decide how to present it.
"""
from typing import Optional


class CirculationError(Exception):
    """Base class for every business-rule failure."""

    code = "circulation_error"


# ------------------------- Lookups ------------------------- #
class NotFoundError(CirculationError, LookupError):
    code = "not_found"
    kind = "entity"

    def __init__(self, identifier: str, message: Optional[str] = None) -> None:
        self.identifier = identifier
        super().__init__(message or f"{self.kind.capitalize()} {identifier} not found.")


class BookNotFound(NotFoundError):
    kind = "book"


class UserNotFound(NotFoundError):
    kind = "user"


class RequestNotFound(NotFoundError):
    kind = "request"


class ReviewNotFound(NotFoundError):
    kind = "review"


class AdditionRequestNotFound(NotFoundError):
    kind = "addition request"


class CopyNotFound(NotFoundError):
    kind = "copy"


# ------------------------- State machine ------------------------- #
class InvalidTransition(CirculationError, ValueError):
    code = "invalid_transition"

    def __init__(self, entity: str, identifier: str, current: str, action: str) -> None:
        self.entity = entity
        self.identifier = identifier
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} {entity} {identifier} while it is {current}.")


class AlreadyProcessed(InvalidTransition):
    code = "already_processed"


# ------------------------- Inventory ------------------------- #
class BookUnavailable(CirculationError):
    code = "book_unavailable"

    def __init__(self, book_id: str) -> None:
        self.book_id = book_id
        super().__init__(f"No copy of book {book_id} is currently available.")


class NoCopyAvailable(CirculationError):
    code = "no_copy_available"

    def __init__(self, book_id: str) -> None:
        self.book_id = book_id
        super().__init__(f"No copy of book {book_id} is left to issue.")


class AlreadyIssued(CirculationError):
    code = "already_issued"

    def __init__(self, copy_id: str) -> None:
        self.copy_id = copy_id
        super().__init__(f"Copy {copy_id} is already issued.")


class EmptySet(LookupError):
    """Raised by the allocator when there is no free copy id to hand out."""


class InventoryCorruptionError(RuntimeError):
    """Copy accounting no longer adds up. Indicates a bug, never a user error."""
