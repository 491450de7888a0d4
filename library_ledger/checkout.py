from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum

from library_ledger.database import format_timestamp, parse_timestamp

CENTS = Decimal("0.01")


class CheckoutStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    # Terminal: the copy came back after its due date
    OVERDUE = "overdue"


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENTS)


class Checkout:
    """One loan of one copy to one reader."""

    def __init__(self, checkout_id: int, user_id: int, book_id: int,
                 checkout_date: datetime, due_date: datetime, return_date: datetime | None = None,
                 status: CheckoutStatus = CheckoutStatus.ACTIVE, is_late: bool = False,
                 late_fee: Decimal | None = None,
                 title: str | None = None, isbn: str | None = None) -> None:
        self.checkout_id = checkout_id
        self.user_id = user_id
        self.book_id = book_id
        self.checkout_date = checkout_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = CheckoutStatus(status)
        self.is_late = bool(is_late)
        self.late_fee = to_money(late_fee)
        # Joined from the books table for display
        self.title = title
        self.isbn = isbn

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"#{self.checkout_id} {self.title or self.book_id} due {format_timestamp(self.due_date)} [{self.status.value}]"

    def to_dict(self) -> dict:
        return {
            "checkout_id": self.checkout_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "title": self.title,
            "isbn": self.isbn,
            "checkout_date": format_timestamp(self.checkout_date),
            "due_date": format_timestamp(self.due_date),
            "return_date": format_timestamp(self.return_date) if self.return_date else None,
            "status": self.status.value,
            "is_late": self.is_late,
            "late_fee": str(self.late_fee),
        }

    @staticmethod
    def from_dict(data: dict) -> "Checkout":
        return Checkout(
            checkout_id=data["checkout_id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            checkout_date=parse_timestamp(data["checkout_date"]),
            due_date=parse_timestamp(data["due_date"]),
            return_date=parse_timestamp(data.get("return_date")),
            status=data.get("status", CheckoutStatus.ACTIVE.value),
            is_late=bool(data.get("is_late", False)),
            late_fee=data.get("late_fee"),
            title=data.get("title"),
            isbn=data.get("isbn"),
        )


class ReturnReceipt:
    """What a reader is told when a copy comes back."""

    def __init__(self, checkout_id: int, book_id: int, status: CheckoutStatus,
                 days_late: int, late_fee: Decimal, return_date: datetime) -> None:
        self.checkout_id = checkout_id
        self.book_id = book_id
        self.status = status
        self.days_late = days_late
        self.late_fee = to_money(late_fee)
        self.return_date = return_date

    @property
    def is_late(self) -> bool:
        return self.days_late > 0

    def to_dict(self) -> dict:
        return {
            "checkout_id": self.checkout_id,
            "book_id": self.book_id,
            "status": self.status.value,
            "days_late": self.days_late,
            "is_late": self.is_late,
            "late_fee": str(self.late_fee),
            "return_date": format_timestamp(self.return_date),
        }


class InventoryAdjustment:
    """Audit record of a staff action on a book, as stored in ``staff_logs``."""

    def __init__(self, log_id: int | None, staff_id: int, action_type: str, target_id: int,
                 old_values: dict, new_values: dict, action_timestamp: datetime,
                 target_table: str = "books", staff_username: str | None = None) -> None:
        self.log_id = log_id
        self.staff_id = staff_id
        self.action_type = action_type
        self.target_table = target_table
        self.target_id = target_id
        self.old_values = old_values
        self.new_values = new_values
        self.action_timestamp = action_timestamp
        self.staff_username = staff_username

    @property
    def book_id(self) -> int:
        return self.target_id

    @property
    def previous_total(self) -> int | None:
        return self.old_values.get("total_copies")

    @property
    def new_total(self) -> int | None:
        return self.new_values.get("total_copies")

    def to_dict(self) -> dict:
        return {
            "log_id": self.log_id,
            "staff_id": self.staff_id,
            "staff_username": self.staff_username,
            "action_type": self.action_type,
            "target_table": self.target_table,
            "target_id": self.target_id,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "action_timestamp": format_timestamp(self.action_timestamp),
        }

    @staticmethod
    def from_dict(data: dict) -> "InventoryAdjustment":
        def _json(raw):
            if isinstance(raw, str):
                return json.loads(raw)
            return raw or {}

        return InventoryAdjustment(
            log_id=data.get("log_id"),
            staff_id=data["staff_id"],
            action_type=data["action_type"],
            target_table=data.get("target_table", "books"),
            target_id=data["target_id"],
            old_values=_json(data.get("old_values")),
            new_values=_json(data.get("new_values")),
            action_timestamp=parse_timestamp(data["action_timestamp"]),
            staff_username=data.get("staff_username"),
        )
