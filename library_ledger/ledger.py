"""Checkout ledger: the only code that moves copies between the shelf and readers.

Borrow, return, renew and inventory updates each run as one transaction that
holds the store's write lock from its first read, so concurrent operations on
the same book are applied one after another and ``available_copies`` never
drifts from the number of active loans. A transaction that loses a lock race
is rerun from the start (see ``library_ledger.retry``).
"""

import json
import logging
import math
import sqlite3
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from library_ledger.book import Book
from library_ledger.checkout import (
    Checkout,
    CheckoutStatus,
    InventoryAdjustment,
    ReturnReceipt,
    to_money,
)
from library_ledger.config import settings
from library_ledger.database import Database, format_timestamp, parse_timestamp
from library_ledger.errors import (
    AlreadyCheckedOut,
    HasOverdueItems,
    InvalidArgument,
    LedgerError,
    NoCopiesAvailable,
    NotEligible,
    NotFound,
    PermissionDenied,
    Retired,
)
from library_ledger.retry import RetryPolicy, with_contention_retry
from library_ledger.users import UserDirectory
from library_ledger.utils.validators import (
    LOAN_DAYS_RANGE,
    RENEWAL_DAYS_RANGE,
    SOON_DUE_DAYS_RANGE,
    DayCountValidator,
    IdValidator,
    InventoryValidator,
    PageValidator,
)

logger = logging.getLogger(__name__)

CHECKOUT_FILTERS = ("active", "overdue", "returned")
STAFF_ACTIONS = ("update_inventory", "retire_book")
MAX_CHECKOUT_PAGE = 50
MAX_LOG_PAGE = 100

_CHECKOUT_SELECT = """
    SELECT c.checkout_id, c.user_id, c.book_id, c.checkout_date, c.due_date,
           c.return_date, c.status, c.is_late, c.late_fee, b.title, b.isbn
    FROM checkouts c
    JOIN books b ON c.book_id = b.book_id
"""


def days_late(due_date: datetime, returned_at: datetime) -> int:
    """Whole days past due, never negative."""
    return max(0, (returned_at - due_date).days)


def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "current_page": page,
        "total_pages": math.ceil(total / limit) if total else 0,
        "total_items": total,
        "limit": limit,
    }


class CheckoutLedger:
    """Borrow, return, renew and inventory operations against a shared store."""

    def __init__(self, database: Database, users: Optional[UserDirectory] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 late_fee_per_day: Optional[Decimal] = None) -> None:
        self.database = database
        self.users = users or UserDirectory(database)
        self.clock = clock or datetime.now
        self.retry_policy = retry_policy or RetryPolicy()
        self.late_fee_per_day = to_money(
            settings.late_fee_per_day if late_fee_per_day is None else late_fee_per_day
        )

    # ------------------------- Core operations ------------------------- #
    def borrow(self, user_id: int, book_id: int, loan_days: Optional[int] = None) -> Checkout:
        """Lend one copy of ``book_id`` to ``user_id`` for ``loan_days`` days."""
        if loan_days is None:
            loan_days = settings.default_loan_days
        self._require_id(book_id, "book")
        if not DayCountValidator.is_valid_loan_days(loan_days):
            raise InvalidArgument(
                f"Loan days must be between {LOAN_DAYS_RANGE[0]} and {LOAN_DAYS_RANGE[1]}."
            )
        self._require_reader(user_id)
        try:
            checkout = self._borrow(user_id, book_id, loan_days)
        except LedgerError as e:
            logger.info("Borrow refused (user=%s, book=%s): %s", user_id, book_id, e.kind)
            raise
        logger.info("User %s borrowed book %s (checkout=%s, due=%s)",
                    user_id, book_id, checkout.checkout_id, format_timestamp(checkout.due_date))
        return checkout

    @with_contention_retry
    def _borrow(self, user_id: int, book_id: int, loan_days: int) -> Checkout:
        now = self._now()
        stamp = format_timestamp(now)
        with self.database.transaction() as conn:
            if self._has_overdue_items(conn, user_id, stamp):
                raise HasOverdueItems("Cannot borrow books while you have overdue items.")

            existing = conn.execute(
                "SELECT checkout_id FROM checkouts WHERE user_id = ? AND book_id = ? AND status = 'active'",
                (user_id, book_id),
            ).fetchone()
            if existing:
                raise AlreadyCheckedOut("You already have this book checked out.")

            book = self._lock_book(conn, book_id)
            if book.is_retired:
                raise Retired("Book is retired.")
            if book.available_copies <= 0:
                raise NoCopiesAvailable("No copies available.")

            cursor = conn.execute(
                "INSERT INTO checkouts (user_id, book_id, checkout_date, due_date, status) "
                "VALUES (?, ?, ?, ?, 'active')",
                (user_id, book_id, stamp, format_timestamp(now + timedelta(days=loan_days))),
            )
            conn.execute(
                "UPDATE books SET available_copies = available_copies - 1 WHERE book_id = ?",
                (book_id,),
            )
            return self._load_checkout(conn, cursor.lastrowid)

    def return_book(self, checkout_id: int, user_id: Optional[int] = None) -> ReturnReceipt:
        """Take a copy back and settle the late fee.

        When ``user_id`` is given the caller must be an active reader who owns
        the checkout; staff tooling may omit it.
        """
        self._require_id(checkout_id, "checkout")
        if user_id is not None:
            self._require_reader(user_id)
        try:
            receipt = self._return(checkout_id, user_id)
        except LedgerError as e:
            logger.info("Return refused (checkout=%s): %s", checkout_id, e.kind)
            raise
        logger.info("Checkout %s returned as %s (days late=%s, fee=%s)",
                    checkout_id, receipt.status.value, receipt.days_late, receipt.late_fee)
        return receipt

    @with_contention_retry
    def _return(self, checkout_id: int, user_id: Optional[int]) -> ReturnReceipt:
        now = self._now()
        with self.database.transaction() as conn:
            row = conn.execute(
                """
                SELECT c.checkout_id, c.user_id, c.book_id, c.due_date, c.status
                FROM checkouts c
                JOIN books b ON c.book_id = b.book_id
                WHERE c.checkout_id = ?
                """,
                (checkout_id,),
            ).fetchone()
            if (row is None or row["status"] != CheckoutStatus.ACTIVE.value
                    or (user_id is not None and row["user_id"] != user_id)):
                raise NotFound("Checkout record not found or already returned.")

            late = days_late(parse_timestamp(row["due_date"]), now)
            fee = self.late_fee(late)
            status = CheckoutStatus.OVERDUE if late > 0 else CheckoutStatus.RETURNED
            conn.execute(
                "UPDATE checkouts SET return_date = ?, status = ?, is_late = ?, late_fee = ? "
                "WHERE checkout_id = ?",
                (format_timestamp(now), status.value, int(late > 0), str(fee), checkout_id),
            )
            # Capped so a shrunken inventory never ends up above its total
            conn.execute(
                "UPDATE books SET available_copies = MIN(available_copies + 1, total_copies) "
                "WHERE book_id = ?",
                (row["book_id"],),
            )
        return ReturnReceipt(
            checkout_id=checkout_id,
            book_id=row["book_id"],
            status=status,
            days_late=late,
            late_fee=fee,
            return_date=now,
        )

    def renew(self, checkout_id: int, user_id: int, additional_days: Optional[int] = None) -> Checkout:
        """Push the due date of an active, not yet overdue checkout further out."""
        if additional_days is None:
            additional_days = settings.default_renewal_days
        self._require_id(checkout_id, "checkout")
        if not DayCountValidator.is_valid_renewal_days(additional_days):
            raise InvalidArgument(
                f"Additional days must be between {RENEWAL_DAYS_RANGE[0]} and {RENEWAL_DAYS_RANGE[1]}."
            )
        self._require_reader(user_id)
        try:
            checkout = self._renew(checkout_id, user_id, additional_days)
        except LedgerError as e:
            logger.info("Renewal refused (checkout=%s, user=%s): %s", checkout_id, user_id, e.kind)
            raise
        logger.info("Checkout %s renewed by %s days (due=%s)",
                    checkout_id, additional_days, format_timestamp(checkout.due_date))
        return checkout

    @with_contention_retry
    def _renew(self, checkout_id: int, user_id: int, additional_days: int) -> Checkout:
        now = self._now()
        with self.database.transaction() as conn:
            row = conn.execute(
                "SELECT checkout_id, user_id, due_date, status FROM checkouts WHERE checkout_id = ?",
                (checkout_id,),
            ).fetchone()
            if row is None or row["user_id"] != user_id:
                raise NotFound("Checkout record not found.")
            if row["status"] != CheckoutStatus.ACTIVE.value:
                raise NotEligible("Only active checkouts can be renewed.")
            due_date = parse_timestamp(row["due_date"])
            if due_date < now:
                raise NotEligible("This book is overdue and cannot be renewed; please return it.")

            conn.execute(
                "UPDATE checkouts SET due_date = ? WHERE checkout_id = ?",
                (format_timestamp(due_date + timedelta(days=additional_days)), checkout_id),
            )
            return self._load_checkout(conn, checkout_id)

    def update_inventory(self, staff_id: int, book_id: int, new_total_copies: int) -> InventoryAdjustment:
        """Set a book's total copies; copies already lent out stay lent out."""
        self._require_id(book_id, "book")
        if not InventoryValidator.is_valid_copy_count(new_total_copies):
            raise InvalidArgument("Total copies must be a non-negative integer.")
        self._require_staff(staff_id)
        try:
            adjustment = self._update_inventory(staff_id, book_id, new_total_copies)
        except LedgerError as e:
            logger.info("Inventory update refused (book=%s): %s", book_id, e.kind)
            raise
        logger.info("Staff %s set book %s copies %s -> %s",
                    staff_id, book_id, adjustment.previous_total, adjustment.new_total)
        return adjustment

    @with_contention_retry
    def _update_inventory(self, staff_id: int, book_id: int, new_total_copies: int) -> InventoryAdjustment:
        now = self._now()
        with self.database.transaction() as conn:
            book = self._lock_book(conn, book_id)
            new_available = max(0, new_total_copies - book.checked_out_copies)
            conn.execute(
                "UPDATE books SET total_copies = ?, available_copies = ? WHERE book_id = ?",
                (new_total_copies, new_available, book_id),
            )
            return self._append_staff_log(
                conn, staff_id, "update_inventory", book_id,
                {"total_copies": book.total_copies, "available_copies": book.available_copies},
                {"total_copies": new_total_copies, "available_copies": new_available},
                now,
            )

    def retire_book(self, staff_id: int, book_id: int) -> Book:
        """Withdraw a title from lending. Active loans can still be returned."""
        self._require_id(book_id, "book")
        self._require_staff(staff_id)
        try:
            book = self._retire_book(staff_id, book_id)
        except LedgerError as e:
            logger.info("Retire refused (book=%s): %s", book_id, e.kind)
            raise
        logger.info("Staff %s retired book %s", staff_id, book_id)
        return book

    @with_contention_retry
    def _retire_book(self, staff_id: int, book_id: int) -> Book:
        now = self._now()
        with self.database.transaction() as conn:
            book = self._lock_book(conn, book_id)
            if book.is_retired:
                raise NotEligible("Book is already retired.")
            conn.execute("UPDATE books SET is_retired = 1 WHERE book_id = ?", (book_id,))
            self._append_staff_log(
                conn, staff_id, "retire_book", book_id,
                {"is_retired": False}, {"is_retired": True}, now,
            )
            book.is_retired = True
            return book

    # ------------------------- Reader queries ------------------------- #
    def list_checkouts(self, user_id: int, status: Optional[str] = None,
                       page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """A reader's checkouts, newest first.

        ``active`` and ``overdue`` are derived from the due date of loans that
        are still out; ``returned`` is anything with a return date.
        """
        if status is not None and status not in CHECKOUT_FILTERS:
            raise InvalidArgument(f"Status must be one of: {', '.join(CHECKOUT_FILTERS)}.")
        self._require_page(page, limit, MAX_CHECKOUT_PAGE)
        stamp = format_timestamp(self._now())

        where = "WHERE c.user_id = ?"
        params: List[Any] = [user_id]
        if status == "active":
            where += " AND c.status = 'active' AND c.due_date >= ?"
            params.append(stamp)
        elif status == "overdue":
            where += " AND c.status = 'active' AND c.due_date < ?"
            params.append(stamp)
        elif status == "returned":
            where += " AND c.return_date IS NOT NULL"

        with self.database.reader() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM checkouts c {where}", params).fetchone()[0]
            rows = conn.execute(
                f"{_CHECKOUT_SELECT} {where} ORDER BY c.checkout_date DESC, c.checkout_id DESC LIMIT ? OFFSET ?",
                params + [limit, (page - 1) * limit],
            ).fetchall()
        return {
            "checkouts": [Checkout.from_dict(dict(row)) for row in rows],
            "pagination": _pagination(page, limit, total),
        }

    def checkout_history(self, user_id: int, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        """Returned checkouts, most recently returned first."""
        self._require_page(page, limit, MAX_CHECKOUT_PAGE)
        with self.database.reader() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM checkouts WHERE user_id = ? AND return_date IS NOT NULL",
                (user_id,),
            ).fetchone()[0]
            rows = conn.execute(
                f"{_CHECKOUT_SELECT} WHERE c.user_id = ? AND c.return_date IS NOT NULL "
                "ORDER BY c.return_date DESC, c.checkout_id DESC LIMIT ? OFFSET ?",
                (user_id, limit, (page - 1) * limit),
            ).fetchall()
        return {
            "history": [Checkout.from_dict(dict(row)) for row in rows],
            "pagination": _pagination(page, limit, total),
        }

    def overdue_checkouts(self, user_id: int) -> List[Dict[str, Any]]:
        """Loans still out past their due date, oldest due first, with days overdue."""
        now = self._now()
        with self.database.reader() as conn:
            rows = conn.execute(
                f"{_CHECKOUT_SELECT} WHERE c.user_id = ? AND c.status = 'active' AND c.due_date < ? "
                "ORDER BY c.due_date ASC",
                (user_id, format_timestamp(now)),
            ).fetchall()
        result = []
        for row in rows:
            checkout = Checkout.from_dict(dict(row))
            item = checkout.to_dict()
            item["days_overdue"] = days_late(checkout.due_date, now)
            item["accrued_fee"] = str(self.late_fee(item["days_overdue"]))
            result.append(item)
        return result

    def soon_due(self, user_id: int, days: int = 3) -> List[Checkout]:
        """Loans still out that fall due within the next ``days`` days."""
        if not DayCountValidator.is_valid_soon_due_days(days):
            raise InvalidArgument(
                f"Days must be between {SOON_DUE_DAYS_RANGE[0]} and {SOON_DUE_DAYS_RANGE[1]}."
            )
        now = self._now()
        with self.database.reader() as conn:
            rows = conn.execute(
                f"{_CHECKOUT_SELECT} WHERE c.user_id = ? AND c.status = 'active' "
                "AND c.due_date >= ? AND c.due_date <= ? ORDER BY c.due_date ASC",
                (user_id, format_timestamp(now), format_timestamp(now + timedelta(days=days))),
            ).fetchall()
        return [Checkout.from_dict(dict(row)) for row in rows]

    def borrowed_book_ids(self, user_id: int) -> List[int]:
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT book_id FROM checkouts WHERE user_id = ? AND status = 'active' ORDER BY book_id",
                (user_id,),
            ).fetchall()
        return [row["book_id"] for row in rows]

    def get_checkout(self, checkout_id: int) -> Optional[Checkout]:
        with self.database.reader() as conn:
            row = conn.execute(f"{_CHECKOUT_SELECT} WHERE c.checkout_id = ?", (checkout_id,)).fetchone()
        return Checkout.from_dict(dict(row)) if row else None

    # ------------------------- Staff queries ------------------------- #
    def staff_logs(self, action_type: Optional[str] = None, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """Audit trail of staff actions, newest first."""
        if action_type is not None and action_type not in STAFF_ACTIONS:
            raise InvalidArgument(f"Action type must be one of: {', '.join(STAFF_ACTIONS)}.")
        self._require_page(page, limit, MAX_LOG_PAGE)

        where = ""
        params: List[Any] = []
        if action_type:
            where = "WHERE sl.action_type = ?"
            params.append(action_type)

        with self.database.reader() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM staff_logs sl {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT sl.*, u.username AS staff_username
                FROM staff_logs sl
                JOIN users u ON sl.staff_id = u.user_id
                {where}
                ORDER BY sl.action_timestamp DESC, sl.log_id DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, (page - 1) * limit],
            ).fetchall()
        return {
            "logs": [InventoryAdjustment.from_dict(dict(row)) for row in rows],
            "pagination": _pagination(page, limit, total),
        }

    # ------------------------- Helpers ------------------------- #
    def late_fee(self, late_days: int) -> Decimal:
        return to_money(self.late_fee_per_day * late_days)

    def _now(self) -> datetime:
        # Stored timestamps have second precision
        return self.clock().replace(microsecond=0)

    @staticmethod
    def _require_id(value: Any, what: str) -> None:
        if not IdValidator.is_valid_id(value):
            raise InvalidArgument(f"Invalid {what} id.")

    @staticmethod
    def _require_page(page: int, limit: int, maximum: int) -> None:
        if not PageValidator.is_valid_page(page):
            raise InvalidArgument("Page must be a positive integer.")
        if not PageValidator.is_valid_limit(limit, maximum):
            raise InvalidArgument(f"Limit must be between 1 and {maximum}.")

    def _require_reader(self, user_id: int) -> None:
        if not IdValidator.is_valid_id(user_id) or not self.users.is_active_reader(user_id):
            raise PermissionDenied("Reader access required.")

    def _require_staff(self, staff_id: int) -> None:
        if not IdValidator.is_valid_id(staff_id) or not self.users.is_staff(staff_id):
            raise PermissionDenied("Staff access required.")

    @staticmethod
    def _has_overdue_items(conn: sqlite3.Connection, user_id: int, stamp: str) -> bool:
        # Loans still out past due, and loans already flagged overdue but not yet returned
        row = conn.execute(
            """
            SELECT COUNT(*) FROM checkouts
            WHERE user_id = ?
              AND ((status = 'active' AND due_date < ?)
                   OR (status = 'overdue' AND return_date IS NULL))
            """,
            (user_id, stamp),
        ).fetchone()
        return row[0] > 0

    @staticmethod
    def _lock_book(conn: sqlite3.Connection, book_id: int) -> Book:
        """Read the book row inside the open write transaction.

        ``BEGIN IMMEDIATE`` already holds the write lock, so the row cannot
        change under us until commit; this is the ``SELECT ... FOR UPDATE`` point.
        """
        row = conn.execute(
            "SELECT book_id, title, isbn, total_copies, available_copies, is_retired "
            "FROM books WHERE book_id = ?",
            (book_id,),
        ).fetchone()
        if row is None:
            raise NotFound("Book not found.")
        return Book.from_dict(dict(row))

    @staticmethod
    def _load_checkout(conn: sqlite3.Connection, checkout_id: int) -> Checkout:
        row = conn.execute(f"{_CHECKOUT_SELECT} WHERE c.checkout_id = ?", (checkout_id,)).fetchone()
        return Checkout.from_dict(dict(row))

    @staticmethod
    def _append_staff_log(conn: sqlite3.Connection, staff_id: int, action_type: str, book_id: int,
                          old_values: dict, new_values: dict, when: datetime) -> InventoryAdjustment:
        cursor = conn.execute(
            "INSERT INTO staff_logs (staff_id, action_type, target_table, target_id, "
            "old_values, new_values, action_timestamp) VALUES (?, ?, 'books', ?, ?, ?, ?)",
            (staff_id, action_type, book_id, json.dumps(old_values), json.dumps(new_values),
             format_timestamp(when)),
        )
        return InventoryAdjustment(
            log_id=cursor.lastrowid,
            staff_id=staff_id,
            action_type=action_type,
            target_id=book_id,
            old_values=old_values,
            new_values=new_values,
            action_timestamp=when,
        )
