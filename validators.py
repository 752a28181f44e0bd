import re
from typing import Optional

from models import ReviewType


class TextValidator:
    """Basic text validation and sanitization for catalog and review input."""

    @staticmethod
    def _is_non_blank(text: Optional[str]) -> bool:
        return text is not None and bool(text.strip())

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        # Numeric titles such as "1984" are fine
        return TextValidator._is_non_blank(title)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        # must not be digits only
        if not TextValidator._is_non_blank(author):
            return False
        return not author.strip().isdigit()

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        """Strip HTML tags; words are kept as typed and escaped on output."""
        if text is None:
            return ""
        return re.sub(r"<[^>]*>", "", text).strip()


class ReviewValidator:
    """Normalizes submission input; raises ValueError on anything unusable."""

    @staticmethod
    def review_type(value) -> ReviewType:
        try:
            return ReviewType(str(getattr(value, "value", value)).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown submission type: {value!r}. Use 'review' or 'summary'.") from None

    @staticmethod
    def content(text: Optional[str]) -> str:
        cleaned = TextValidator.sanitize_text(text)
        if not cleaned:
            raise ValueError("Content cannot be empty.")
        return cleaned

    @staticmethod
    def rating(review_type: ReviewType, rating: Optional[int]) -> Optional[int]:
        if rating is None:
            return None
        if review_type != ReviewType.REVIEW:
            raise ValueError("Only reviews carry a rating.")
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValueError("Rating must be an integer between 1 and 5.")
        return rating


def validate_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValueError("Quantity must be a positive integer.")
    return quantity


def normalize_copy_id(raw: Optional[str]) -> str:
    """Copy ids are scanned or typed at the desk; strip whitespace and upper-case them."""
    return (raw or "").strip().upper()
