import pytest

from errors import AlreadyProcessed, BookNotFound, ReviewNotFound, UserNotFound
from ledger import CoinLedger
from models import ReviewStatus, ReviewType


@pytest.fixture
def student(memory_lib):
    return memory_lib.register_user("Sam Student", "S-100")


@pytest.fixture
def book(memory_lib):
    return memory_lib.add_book("Dune", "Frank Herbert")


def test_submit_does_not_credit(ledger, student, book):
    review = ledger.submit_review(student.id, book.id, "review", "Loved the sandworms.", rating=5)
    assert review.status == ReviewStatus.PENDING
    assert review.type == ReviewType.REVIEW
    assert review.coins_awarded == 5
    assert ledger.balance(student.id) == 0


@pytest.mark.parametrize("kind, coins", [("review", 5), ("summary", 15)])
def test_approve_credits_once(ledger, student, book, kind, coins):
    review = ledger.submit_review(student.id, book.id, kind, "Paul goes to Arrakis.")
    approved = ledger.approve_review(review.id)
    assert approved.status == ReviewStatus.APPROVED
    assert approved.processed_at is not None
    assert ledger.balance(student.id) == coins

    with pytest.raises(AlreadyProcessed):
        ledger.approve_review(review.id)
    assert ledger.balance(student.id) == coins

    txs = ledger.transactions(student.id)
    assert len(txs) == 1
    assert txs[0].amount == coins
    assert txs[0].reference_id == review.id


def test_reject_never_credits(ledger, student, book):
    review = ledger.submit_review(student.id, book.id, "summary", "A desert planet.")
    rejected = ledger.reject_review(review.id)
    assert rejected.status == ReviewStatus.REJECTED
    assert ledger.balance(student.id) == 0
    assert ledger.transactions(student.id) == []

    with pytest.raises(AlreadyProcessed):
        ledger.approve_review(review.id)
    assert ledger.balance(student.id) == 0


def test_coins_accumulate(ledger, student, book):
    for kind in ("review", "summary", "review"):
        ledger.approve_review(ledger.submit_review(student.id, book.id, kind, "text").id)
    assert ledger.balance(student.id) == 25
    assert ledger.get_review(ledger.list_reviews(user_id=student.id)[0].id).status == ReviewStatus.APPROVED


def test_award_fixed_at_submission(store, clock, memory_lib, student, book):
    early = CoinLedger(store, clock=clock, awards={"review": 5, "summary": 15})
    review = early.submit_review(student.id, book.id, "review", "Solid.")

    generous = CoinLedger(store, clock=clock, awards={"review": 50, "summary": 150})
    generous.approve_review(review.id)
    assert generous.balance(student.id) == 5


def test_submit_validation(ledger, student, book):
    with pytest.raises(ValueError, match="Unknown submission type"):
        ledger.submit_review(student.id, book.id, "essay", "text")
    with pytest.raises(ValueError, match="Content cannot be empty"):
        ledger.submit_review(student.id, book.id, "review", "   ")
    with pytest.raises(ValueError, match="Only reviews carry a rating"):
        ledger.submit_review(student.id, book.id, "summary", "text", rating=4)
    with pytest.raises(ValueError, match="between 1 and 5"):
        ledger.submit_review(student.id, book.id, "review", "text", rating=6)
    with pytest.raises(UserNotFound):
        ledger.submit_review("ghost", book.id, "review", "text")
    with pytest.raises(BookNotFound):
        ledger.submit_review(student.id, "ghost", "review", "text")
    assert ledger.list_reviews() == []


def test_content_is_sanitized(ledger, student, book):
    review = ledger.submit_review(student.id, book.id, "review", "<b>Great</b> read ")
    assert review.content == "Great read"


def test_unknown_review(ledger):
    with pytest.raises(ReviewNotFound):
        ledger.approve_review("missing")


def test_pending_filter(ledger, student, book):
    a = ledger.submit_review(student.id, book.id, "review", "one")
    b = ledger.submit_review(student.id, book.id, "summary", "two")
    ledger.approve_review(a.id)
    assert [r.id for r in ledger.list_reviews(status=ReviewStatus.PENDING)] == [b.id]


def test_content_keeps_ordinary_words(ledger, student, book):
    text = "A vivid description of the manuscript; alert readers will love it."
    review = ledger.submit_review(student.id, book.id, "summary", text)
    assert review.content == text
    assert ledger.get_review(review.id).content == text
