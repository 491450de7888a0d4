from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from library_ledger.checkout import CheckoutStatus
from library_ledger.errors import (
    AlreadyCheckedOut,
    HasOverdueItems,
    InvalidArgument,
    NoCopiesAvailable,
    NotEligible,
    NotFound,
    PermissionDenied,
    Retired,
)
from library_ledger.ledger import days_late


def book_counts(database, book_id):
    with database.reader() as conn:
        row = conn.execute(
            "SELECT total_copies, available_copies FROM books WHERE book_id = ?", (book_id,)
        ).fetchone()
    return row["total_copies"], row["available_copies"]


def checkout_count(database, **where):
    clause = " AND ".join(f"{k} = ?" for k in where) or "1 = 1"
    with database.reader() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM checkouts WHERE {clause}", tuple(where.values())).fetchone()[0]


def assert_invariants(database):
    with database.reader() as conn:
        bad_books = conn.execute(
            "SELECT book_id FROM books WHERE available_copies < 0 OR available_copies > total_copies"
        ).fetchall()
        duplicates = conn.execute(
            "SELECT user_id, book_id FROM checkouts WHERE status = 'active' "
            "GROUP BY user_id, book_id HAVING COUNT(*) > 1"
        ).fetchall()
    assert bad_books == []
    assert duplicates == []


# ------------------------- borrow ------------------------- #
def test_borrow_creates_checkout_and_decrements(ledger, database, reader, make_book, clock):
    book = make_book("Dune", copies=2)

    checkout = ledger.borrow(reader.user_id, book.book_id, 14)

    assert checkout.status is CheckoutStatus.ACTIVE
    assert checkout.title == "Dune"
    assert checkout.isbn == book.isbn
    assert checkout.checkout_date == clock.now
    assert checkout.due_date == clock.now + timedelta(days=14)
    assert checkout.return_date is None
    assert book_counts(database, book.book_id) == (2, 1)
    assert checkout_count(database) == 1
    assert_invariants(database)


def test_borrow_uses_default_loan_length(ledger, reader, make_book, clock):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id)
    assert checkout.due_date - checkout.checkout_date == timedelta(days=14)


@pytest.mark.parametrize("loan_days", [0, 31, -1, "7", True])
def test_borrow_rejects_out_of_range_loan_days(ledger, database, reader, make_book, loan_days):
    book = make_book(copies=1)
    with pytest.raises(InvalidArgument):
        ledger.borrow(reader.user_id, book.book_id, loan_days)
    assert book_counts(database, book.book_id) == (1, 1)


def test_borrow_rejects_malformed_book_id(ledger, reader):
    with pytest.raises(InvalidArgument):
        ledger.borrow(reader.user_id, 0, 7)


def test_borrow_requires_reader(ledger, users, staff, reader, make_book):
    book = make_book()
    with pytest.raises(PermissionDenied):
        ledger.borrow(staff.user_id, book.book_id, 7)

    users.set_active(reader.user_id, False)
    with pytest.raises(PermissionDenied):
        ledger.borrow(reader.user_id, book.book_id, 7)

    with pytest.raises(PermissionDenied):
        ledger.borrow(9999, book.book_id, 7)


def test_borrow_unknown_book(ledger, reader):
    with pytest.raises(NotFound):
        ledger.borrow(reader.user_id, 424242, 7)


def test_borrow_retired_book(ledger, database, reader, make_book):
    book = make_book(copies=3, is_retired=True)
    with pytest.raises(Retired):
        ledger.borrow(reader.user_id, book.book_id, 7)
    assert book_counts(database, book.book_id) == (3, 3)


def test_borrow_with_no_copies_left(ledger, database, reader, other_reader, make_book):
    book = make_book(copies=1)
    ledger.borrow(reader.user_id, book.book_id, 7)

    with pytest.raises(NoCopiesAvailable):
        ledger.borrow(other_reader.user_id, book.book_id, 7)
    assert book_counts(database, book.book_id) == (1, 0)
    assert checkout_count(database) == 1


def test_borrow_same_book_twice(ledger, database, reader, make_book):
    book = make_book(copies=5)
    ledger.borrow(reader.user_id, book.book_id, 7)

    with pytest.raises(AlreadyCheckedOut):
        ledger.borrow(reader.user_id, book.book_id, 7)
    assert book_counts(database, book.book_id) == (5, 4)
    assert checkout_count(database, user_id=reader.user_id, status="active") == 1


def test_borrow_blocked_by_active_past_due_loan(ledger, reader, make_book, clock):
    first = make_book("First")
    second = make_book("Second")
    ledger.borrow(reader.user_id, first.book_id, 1)
    clock.advance(days=1, seconds=1)

    with pytest.raises(HasOverdueItems):
        ledger.borrow(reader.user_id, second.book_id, 7)


def test_borrow_not_blocked_on_due_date_itself(ledger, reader, make_book, clock):
    first = make_book("First")
    second = make_book("Second")
    ledger.borrow(reader.user_id, first.book_id, 1)
    clock.advance(days=1)

    checkout = ledger.borrow(reader.user_id, second.book_id, 7)
    assert checkout.book_id == second.book_id


def test_borrow_blocked_by_flagged_overdue_loan(ledger, database, reader, make_book):
    held = make_book("Held")
    wanted = make_book("Wanted")
    # A loan flagged overdue that has not come back yet
    with database.transaction() as conn:
        conn.execute(
            "INSERT INTO checkouts (user_id, book_id, checkout_date, due_date, status) "
            "VALUES (?, ?, '2024-01-01 09:00:00', '2024-01-15 09:00:00', 'overdue')",
            (reader.user_id, held.book_id),
        )

    with pytest.raises(HasOverdueItems):
        ledger.borrow(reader.user_id, wanted.book_id, 7)


def test_late_return_does_not_block_future_borrowing(ledger, reader, make_book, clock):
    first = make_book("First")
    second = make_book("Second")
    checkout = ledger.borrow(reader.user_id, first.book_id, 1)
    clock.advance(days=3)
    assert ledger.return_book(checkout.checkout_id).status is CheckoutStatus.OVERDUE

    assert ledger.borrow(reader.user_id, second.book_id, 7).status is CheckoutStatus.ACTIVE


# ------------------------- return ------------------------- #
def test_round_trip_on_time(ledger, database, reader, make_book, clock):
    book = make_book(copies=2)
    checkout = ledger.borrow(reader.user_id, book.book_id, 14)
    clock.advance(days=14)

    receipt = ledger.return_book(checkout.checkout_id, user_id=reader.user_id)

    assert receipt.late_fee == Decimal("0.00")
    assert receipt.days_late == 0
    assert receipt.status is CheckoutStatus.RETURNED
    assert book_counts(database, book.book_id) == (2, 2)
    stored = ledger.get_checkout(checkout.checkout_id)
    assert stored.status is CheckoutStatus.RETURNED
    assert stored.return_date == clock.now
    assert stored.is_late is False
    assert_invariants(database)


def test_late_return_charges_per_whole_day(ledger, database, reader, make_book, clock):
    book = make_book(copies=1)
    checkout = ledger.borrow(reader.user_id, book.book_id, 1)
    clock.advance(days=3)

    receipt = ledger.return_book(checkout.checkout_id)

    assert receipt.days_late == 2
    assert receipt.late_fee == Decimal("2.00")
    assert receipt.status is CheckoutStatus.OVERDUE
    stored = ledger.get_checkout(checkout.checkout_id)
    assert stored.status is CheckoutStatus.OVERDUE
    assert stored.is_late is True
    assert stored.late_fee == Decimal("2.00")
    assert book_counts(database, book.book_id) == (1, 1)


def test_return_partial_day_late_is_free(ledger, reader, make_book, clock):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id, 1)
    clock.advance(days=1, hours=23)

    receipt = ledger.return_book(checkout.checkout_id)
    assert receipt.days_late == 0
    assert receipt.status is CheckoutStatus.RETURNED


def test_days_late_floors():
    due = datetime(2024, 1, 1, 12, 0, 0)
    assert days_late(due, due - timedelta(days=3)) == 0
    assert days_late(due, due + timedelta(hours=47)) == 1
    assert days_late(due, due + timedelta(days=2)) == 2


def test_return_twice_is_not_found(ledger, database, reader, make_book):
    book = make_book(copies=1)
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)
    ledger.return_book(checkout.checkout_id)

    with pytest.raises(NotFound):
        ledger.return_book(checkout.checkout_id)
    assert book_counts(database, book.book_id) == (1, 1)


def test_return_someone_elses_checkout(ledger, database, reader, other_reader, make_book):
    book = make_book(copies=1)
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)

    with pytest.raises(NotFound):
        ledger.return_book(checkout.checkout_id, user_id=other_reader.user_id)
    assert book_counts(database, book.book_id) == (1, 0)


def test_return_unknown_checkout(ledger):
    with pytest.raises(NotFound):
        ledger.return_book(777)


def test_return_requires_reader_when_user_given(ledger, reader, staff, make_book):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)
    with pytest.raises(PermissionDenied):
        ledger.return_book(checkout.checkout_id, user_id=staff.user_id)


# ------------------------- renew ------------------------- #
def test_renew_extends_due_date_only(ledger, database, reader, make_book, clock):
    book = make_book(copies=2)
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)
    clock.advance(days=3)

    renewed = ledger.renew(checkout.checkout_id, reader.user_id, 5)

    assert renewed.due_date == checkout.due_date + timedelta(days=5)
    assert renewed.status is CheckoutStatus.ACTIVE
    assert book_counts(database, book.book_id) == (2, 1)


def test_renew_twice_accumulates(ledger, reader, make_book):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)
    ledger.renew(checkout.checkout_id, reader.user_id, 7)
    renewed = ledger.renew(checkout.checkout_id, reader.user_id, 3)
    assert renewed.due_date == checkout.due_date + timedelta(days=10)


def test_renew_overdue_checkout_refused(ledger, reader, make_book, clock):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id, 2)
    clock.advance(days=3)

    with pytest.raises(NotEligible):
        ledger.renew(checkout.checkout_id, reader.user_id, 7)
    assert ledger.get_checkout(checkout.checkout_id).due_date == checkout.due_date


def test_renew_returned_checkout_refused(ledger, reader, make_book):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)
    ledger.return_book(checkout.checkout_id)

    with pytest.raises(NotEligible):
        ledger.renew(checkout.checkout_id, reader.user_id, 7)


def test_renew_requires_ownership(ledger, reader, other_reader, make_book):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)
    with pytest.raises(NotFound):
        ledger.renew(checkout.checkout_id, other_reader.user_id, 7)
    with pytest.raises(NotFound):
        ledger.renew(5555, reader.user_id, 7)


@pytest.mark.parametrize("days", [0, 15])
def test_renew_rejects_out_of_range_days(ledger, reader, make_book, days):
    book = make_book()
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)
    with pytest.raises(InvalidArgument):
        ledger.renew(checkout.checkout_id, reader.user_id, days)


# ------------------------- inventory ------------------------- #
def test_update_inventory_keeps_lent_copies_lent(ledger, database, reader, other_reader, staff, make_book):
    book = make_book(copies=3)
    ledger.borrow(reader.user_id, book.book_id, 7)
    ledger.borrow(other_reader.user_id, book.book_id, 7)

    adjustment = ledger.update_inventory(staff.user_id, book.book_id, 5)

    assert book_counts(database, book.book_id) == (5, 3)
    assert adjustment.previous_total == 3
    assert adjustment.new_total == 5
    assert adjustment.old_values == {"total_copies": 3, "available_copies": 1}
    assert adjustment.new_values == {"total_copies": 5, "available_copies": 3}
    assert adjustment.staff_id == staff.user_id


def test_shrinking_below_checked_out_floors_at_zero(ledger, database, reader, other_reader, staff, make_book):
    book = make_book(copies=3)
    first = ledger.borrow(reader.user_id, book.book_id, 7)
    second = ledger.borrow(other_reader.user_id, book.book_id, 7)

    ledger.update_inventory(staff.user_id, book.book_id, 1)
    assert book_counts(database, book.book_id) == (1, 0)

    # Copies coming back never push available above total
    ledger.return_book(first.checkout_id)
    ledger.return_book(second.checkout_id)
    assert book_counts(database, book.book_id) == (1, 1)
    assert_invariants(database)


def test_update_inventory_to_zero(ledger, database, staff, make_book):
    book = make_book(copies=2)
    ledger.update_inventory(staff.user_id, book.book_id, 0)
    assert book_counts(database, book.book_id) == (0, 0)


def test_update_inventory_writes_audit_record(ledger, staff, make_book, clock):
    book = make_book(copies=2)
    ledger.update_inventory(staff.user_id, book.book_id, 4)

    logs = ledger.staff_logs()["logs"]
    assert len(logs) == 1
    assert logs[0].action_type == "update_inventory"
    assert logs[0].book_id == book.book_id
    assert logs[0].staff_username == "librarian"
    assert logs[0].action_timestamp == clock.now


def test_update_inventory_requires_staff(ledger, reader, make_book):
    book = make_book()
    with pytest.raises(PermissionDenied):
        ledger.update_inventory(reader.user_id, book.book_id, 4)


def test_update_inventory_validation(ledger, staff, make_book):
    book = make_book()
    with pytest.raises(InvalidArgument):
        ledger.update_inventory(staff.user_id, book.book_id, -1)
    with pytest.raises(NotFound):
        ledger.update_inventory(staff.user_id, 31337, 4)
    assert ledger.staff_logs()["logs"] == []


# ------------------------- retire ------------------------- #
def test_retire_book_blocks_new_loans_but_not_returns(ledger, database, reader, other_reader, staff, make_book):
    book = make_book(copies=2)
    checkout = ledger.borrow(reader.user_id, book.book_id, 7)

    retired = ledger.retire_book(staff.user_id, book.book_id)
    assert retired.is_retired is True

    with pytest.raises(Retired):
        ledger.borrow(other_reader.user_id, book.book_id, 7)
    ledger.return_book(checkout.checkout_id)
    assert book_counts(database, book.book_id) == (2, 2)

    with pytest.raises(NotEligible):
        ledger.retire_book(staff.user_id, book.book_id)
    assert [log.action_type for log in ledger.staff_logs()["logs"]] == ["retire_book"]
