"""Errors raised by the checkout ledger.

Every business-rule refusal is a ``LedgerError`` with a stable ``kind`` string
that callers can map onto a user-facing message or a transport status.
Anything that is not a ``LedgerError`` is an infrastructure failure.
"""

from __future__ import annotations


class LedgerError(Exception):
    kind = "ledger_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"success": False, "error": self.kind, "message": self.message}


class InvalidArgument(LedgerError):
    kind = "invalid_argument"


class PermissionDenied(LedgerError):
    kind = "permission_denied"


class NotFound(LedgerError):
    kind = "not_found"


class HasOverdueItems(LedgerError):
    kind = "has_overdue_items"


class AlreadyCheckedOut(LedgerError):
    kind = "already_checked_out"


class Retired(LedgerError):
    kind = "retired"


class NoCopiesAvailable(LedgerError):
    kind = "no_copies_available"


class NotEligible(LedgerError):
    kind = "not_eligible"


class ContentionError(LedgerError):
    """The store kept reporting lock contention after every retry."""

    kind = "contention"
