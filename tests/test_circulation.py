from datetime import timedelta

import pytest

from errors import (AlreadyIssued, AlreadyProcessed, BookNotFound, BookUnavailable, CopyNotFound,
                    InvalidTransition, NoCopyAvailable, RequestNotFound, UserNotFound)
from models import RequestStatus


@pytest.fixture
def student(memory_lib):
    return memory_lib.register_user("Sam Student", "S-100")


@pytest.fixture
def other(memory_lib):
    return memory_lib.register_user("Olive Other", "S-200")


@pytest.fixture
def book(memory_lib):
    return memory_lib.add_book("Dune", "Frank Herbert", "Science Fiction", quantity=1)


def _assert_accounting(lib, book_id):
    book = lib.get_book(book_id)
    assert book.available_count == len(book.available_copy_ids)
    assert 0 <= book.available_count <= book.total_count
    lib.check_inventory(book_id)


# --- Transitions ---
def test_create_request_is_pending(manager, student, book, clock):
    req = manager.create_request(student.id, book.id)
    assert req.status == RequestStatus.PENDING
    assert req.requested_at == clock.now
    assert req.copy_id is None
    assert req.due_date is None


def test_create_request_unknown_user_or_book(manager, student, book):
    with pytest.raises(UserNotFound):
        manager.create_request("nobody", book.id)
    with pytest.raises(BookNotFound):
        manager.create_request(student.id, "nothing")


def test_create_request_when_no_copy_free(memory_lib, manager, student, other, book):
    req = manager.create_request(student.id, book.id)
    manager.approve_request(req.id)
    with pytest.raises(BookUnavailable):
        manager.create_request(other.id, book.id)


def test_duplicate_active_request_is_refused(manager, student, book):
    manager.create_request(student.id, book.id)
    with pytest.raises(InvalidTransition):
        manager.create_request(student.id, book.id)


def test_approve_takes_lowest_copy_and_sets_due_date(memory_lib, manager, student, clock):
    book = memory_lib.add_book("Emma", "Jane Austen", quantity=3)
    req = manager.approve_request(manager.create_request(student.id, book.id).id)

    assert req.status == RequestStatus.APPROVED
    assert req.copy_id == book.available_copy_ids[0]
    assert req.issued_at == clock.now
    assert req.due_date == clock.now + timedelta(days=14)

    stored = memory_lib.get_book(book.id)
    assert stored.available_count == 2
    assert req.copy_id not in stored.available_copy_ids
    _assert_accounting(memory_lib, book.id)


def test_approve_twice_is_invalid(manager, student, book):
    req = manager.create_request(student.id, book.id)
    manager.approve_request(req.id)
    with pytest.raises(InvalidTransition) as exc:
        manager.approve_request(req.id)
    assert not isinstance(exc.value, AlreadyProcessed)


def test_reject_never_touches_inventory(memory_lib, manager, student, book):
    before = memory_lib.get_book(book.id).to_dict()
    req = manager.reject_request(manager.create_request(student.id, book.id).id)
    assert req.status == RequestStatus.REJECTED
    assert memory_lib.get_book(book.id).to_dict() == before

    with pytest.raises(AlreadyProcessed):
        manager.approve_request(req.id)
    with pytest.raises(AlreadyProcessed):
        manager.reject_request(req.id)


def test_request_return_requires_approved(manager, student, book):
    req = manager.create_request(student.id, book.id)
    with pytest.raises(InvalidTransition):
        manager.request_return(req.id)


def test_return_is_confirmed_by_admin(memory_lib, manager, student, book, clock):
    req = manager.approve_request(manager.create_request(student.id, book.id).id)
    req = manager.request_return(req.id)
    assert req.status == RequestStatus.RETURN_REQUESTED
    # Still out until the desk confirms
    assert memory_lib.get_book(book.id).available_count == 0

    clock.advance(days=3)
    req = manager.confirm_return(req.id)
    assert req.status == RequestStatus.RETURNED
    assert req.returned_at == clock.now
    assert memory_lib.get_book(book.id).available_copy_ids == [req.copy_id]
    _assert_accounting(memory_lib, book.id)

    with pytest.raises(AlreadyProcessed):
        manager.confirm_return(req.id)


def test_deny_return_keeps_copy_out(memory_lib, manager, student, book):
    req = manager.approve_request(manager.create_request(student.id, book.id).id)
    due = req.due_date
    manager.request_return(req.id)

    req = manager.deny_return(req.id)
    assert req.status == RequestStatus.APPROVED
    assert req.due_date == due
    assert memory_lib.get_book(book.id).available_count == 0

    with pytest.raises(InvalidTransition):
        manager.deny_return(req.id)


def test_unknown_request(manager):
    with pytest.raises(RequestNotFound):
        manager.approve_request("missing")


def test_returned_copy_can_be_issued_again(memory_lib, manager, student, other, book):
    first = manager.approve_request(manager.create_request(student.id, book.id).id)
    manager.request_return(first.id)
    manager.confirm_return(first.id)

    second = manager.approve_request(manager.create_request(other.id, book.id).id)
    assert second.copy_id == first.copy_id
    _assert_accounting(memory_lib, book.id)


def test_end_to_end_last_copy(memory_lib, manager, student, other, book):
    assert memory_lib.get_book(book.id).available_count == 1
    mine = manager.create_request(student.id, book.id)
    theirs = manager.create_request(other.id, book.id)

    manager.approve_request(mine.id)
    assert memory_lib.get_book(book.id).available_count == 0

    with pytest.raises(NoCopyAvailable):
        manager.approve_request(theirs.id)
    assert manager.get_request(theirs.id).status == RequestStatus.PENDING

    manager.request_return(mine.id)
    manager.confirm_return(mine.id)
    assert memory_lib.get_book(book.id).available_count == 1
    _assert_accounting(memory_lib, book.id)


# --- Manual issue ---
def test_manual_issue_by_school_id(memory_lib, manager, student, clock):
    book = memory_lib.add_book("Emma", "Jane Austen", quantity=2)
    copy_id = book.available_copy_ids[1]

    req = manager.manual_issue(copy_id.lower() + " ", "S-100")
    assert req.status == RequestStatus.APPROVED
    assert req.user_id == student.id
    assert req.copy_id == copy_id
    assert req.due_date == clock.now + timedelta(days=14)
    assert memory_lib.get_book(book.id).available_copy_ids == [book.available_copy_ids[0]]
    _assert_accounting(memory_lib, book.id)


def test_manual_issue_by_internal_id(manager, student, book):
    req = manager.manual_issue(book.available_copy_ids[0], student.id)
    assert req.user_id == student.id


def test_manual_issue_errors(manager, student, other, book):
    copy_id = book.available_copy_ids[0]
    with pytest.raises(CopyNotFound):
        manager.manual_issue("NOPE-000000-001", student.id)
    with pytest.raises(UserNotFound):
        manager.manual_issue(copy_id, "S-999")

    manager.manual_issue(copy_id, student.id)
    with pytest.raises(AlreadyIssued):
        manager.manual_issue(copy_id, other.id)


# --- Overdue ---
def test_overdue_boundary(manager, student, book, clock):
    issued_at = clock.now
    req = manager.approve_request(manager.create_request(student.id, book.id).id)

    assert not manager.is_overdue(req, issued_at + timedelta(days=13, hours=23, minutes=59))
    # Exactly at the due instant the loan is not yet overdue
    assert not manager.is_overdue(req, issued_at + timedelta(days=14))
    assert manager.is_overdue(req, issued_at + timedelta(days=14, seconds=1))


def test_overdue_only_while_approved(manager, student, book, clock):
    req = manager.approve_request(manager.create_request(student.id, book.id).id)
    manager.request_return(req.id)
    clock.advance(days=20)
    req = manager.get_request(req.id)
    assert not manager.is_overdue(req)
    assert manager.list_overdue() == []

    req = manager.deny_return(req.id)
    assert manager.is_overdue(req)
    assert [r.id for r in manager.list_overdue()] == [req.id]
    assert manager.days_overdue(req) == 6


def test_loan_status_labels(manager, student, book, clock):
    req = manager.create_request(student.id, book.id)
    assert manager.loan_status(req) == "pending"

    req = manager.approve_request(req.id)
    assert manager.loan_status(req) == "on-loan"
    clock.advance(days=12)
    assert manager.loan_status(req) == "due-soon"
    clock.advance(days=2)
    assert manager.loan_status(req) == "due-today"
    clock.advance(days=1)
    assert manager.loan_status(req) == "overdue"


def test_history_is_newest_first(manager, student, memory_lib, clock):
    a = memory_lib.add_book("Emma", "Jane Austen")
    b = memory_lib.add_book("Persuasion", "Jane Austen")
    first = manager.create_request(student.id, a.id)
    clock.advance(minutes=5)
    second = manager.create_request(student.id, b.id)

    assert [r.id for r in manager.history(student.id)] == [second.id, first.id]
    assert [r.id for r in manager.list_requests(status=RequestStatus.PENDING)] == [first.id, second.id]


def test_days_overdue_counts_partial_days(manager, student, book, clock):
    issued_at = clock.now
    req = manager.approve_request(manager.create_request(student.id, book.id).id)

    just_late = issued_at + timedelta(days=14, seconds=1)
    assert manager.loan_status(req, just_late) == "overdue"
    assert manager.days_overdue(req, just_late) == 1
    assert manager.days_overdue(req, issued_at + timedelta(days=15)) == 1
    assert manager.days_overdue(req, issued_at + timedelta(days=15, hours=1)) == 2
    assert manager.days_overdue(req, issued_at + timedelta(days=14)) == 0


def test_manual_issue_only_to_students(memory_lib, manager, book):
    admin = memory_lib.register_user("Ada Admin", "A-1", role="admin")
    copy_id = book.available_copy_ids[0]
    with pytest.raises(UserNotFound, match="only students can borrow"):
        manager.manual_issue(copy_id, "A-1")
    with pytest.raises(UserNotFound):
        manager.manual_issue(copy_id, admin.id)
    assert memory_lib.get_book(book.id).available_copy_ids == [copy_id]
