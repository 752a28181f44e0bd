import logging
from typing import Callable, Dict, List, Optional

from config import settings
from errors import AlreadyProcessed, BookNotFound, ReviewNotFound, UserNotFound
from models import CoinTransaction, Review, ReviewStatus, utcnow
from repositories import Store
from validators import ReviewValidator

logger = logging.getLogger(__name__)


class CoinLedger:
    """Review and summary submissions and the coins paid for approved ones."""

    def __init__(self, store: Store, clock: Optional[Callable] = None,
                 awards: Optional[Dict[str, int]] = None) -> None:
        self.store = store
        self.clock = clock or utcnow
        self.awards = dict(awards) if awards is not None else settings.coin_awards()

    def submit_review(self, user_id: str, book_id: str, type: str, content: str,
                      rating: Optional[int] = None) -> Review:
        """Store a pending submission. The award is fixed now but paid only at approval."""
        review_type = ReviewValidator.review_type(type)
        content = ReviewValidator.content(content)
        rating = ReviewValidator.rating(review_type, rating)

        with self.store.atomic():
            if self.store.users.get(user_id) is None:
                raise UserNotFound(user_id)
            if self.store.books.get(book_id) is None:
                raise BookNotFound(book_id)

            review = Review(
                user_id=user_id,
                book_id=book_id,
                type=review_type,
                content=content,
                rating=rating,
                coins_awarded=self.awards[review_type.value],
                submitted_at=self.clock(),
            )
            self.store.reviews.add(review)

        logger.info("%s %s submitted by user %s for book %s", review_type.value.capitalize(), review.id,
                    user_id, book_id)
        return review

    def approve_review(self, review_id: str) -> Review:
        """Approve a pending submission and credit its coins exactly once."""
        with self.store.atomic():
            review = self._require_pending(review_id, "approve")
            user = self.store.users.get(review.user_id)
            if user is None:
                raise UserNotFound(review.user_id)

            review.status = ReviewStatus.APPROVED
            review.processed_at = self.clock()
            user.coins += review.coins_awarded
            self.store.reviews.save(review)
            self.store.users.save(user)
            self.store.transactions.add(CoinTransaction(
                user_id=user.id,
                amount=review.coins_awarded,
                reason=f"{review.type.value} approved",
                reference_id=review.id,
                created_at=review.processed_at,
            ))

        logger.info("Review %s approved: %d coins credited to user %s", review.id, review.coins_awarded, user.id)
        return review

    def reject_review(self, review_id: str) -> Review:
        with self.store.atomic():
            review = self._require_pending(review_id, "reject")
            review.status = ReviewStatus.REJECTED
            review.processed_at = self.clock()
            self.store.reviews.save(review)

        logger.info("Review %s rejected", review.id)
        return review

    # ------------------------- Reads ------------------------- #
    def get_review(self, review_id: str) -> Review:
        review = self.store.reviews.get(review_id)
        if review is None:
            raise ReviewNotFound(review_id)
        return review

    def list_reviews(self, status: Optional[ReviewStatus] = None, user_id: Optional[str] = None,
                     book_id: Optional[str] = None) -> List[Review]:
        return self.store.reviews.list(status=status, user_id=user_id, book_id=book_id)

    def balance(self, user_id: str) -> int:
        user = self.store.users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user.coins

    def transactions(self, user_id: Optional[str] = None) -> List[CoinTransaction]:
        return self.store.transactions.list(user_id=user_id)

    def _require_pending(self, review_id: str, action: str) -> Review:
        review = self.get_review(review_id)
        if review.status != ReviewStatus.PENDING:
            logger.warning("Cannot %s review %s: already %s", action, review.id, review.status.value)
            raise AlreadyProcessed("review", review.id, review.status.value, action)
        return review

