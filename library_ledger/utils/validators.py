from typing import Any, Optional, Tuple

LOAN_DAYS_RANGE: Tuple[int, int] = (1, 30)
RENEWAL_DAYS_RANGE: Tuple[int, int] = (1, 14)
SOON_DUE_DAYS_RANGE: Tuple[int, int] = (1, 14)


def _is_int(value: Any) -> bool:
    # bool is an int subclass; True is not a valid day count or id
    return isinstance(value, int) and not isinstance(value, bool)


class DayCountValidator:
    """Range checks for the day counts readers may ask for."""

    @staticmethod
    def in_range(value: Any, bounds: Tuple[int, int]) -> bool:
        low, high = bounds
        return _is_int(value) and low <= value <= high

    @staticmethod
    def is_valid_loan_days(days: Any) -> bool:
        return DayCountValidator.in_range(days, LOAN_DAYS_RANGE)

    @staticmethod
    def is_valid_renewal_days(days: Any) -> bool:
        return DayCountValidator.in_range(days, RENEWAL_DAYS_RANGE)

    @staticmethod
    def is_valid_soon_due_days(days: Any) -> bool:
        return DayCountValidator.in_range(days, SOON_DUE_DAYS_RANGE)


class IdValidator:
    @staticmethod
    def is_valid_id(value: Any) -> bool:
        return _is_int(value) and value >= 1


class PageValidator:
    @staticmethod
    def is_valid_page(page: Any) -> bool:
        return _is_int(page) and page >= 1

    @staticmethod
    def is_valid_limit(limit: Any, maximum: int) -> bool:
        return _is_int(limit) and 1 <= limit <= maximum


class InventoryValidator:
    @staticmethod
    def is_valid_copy_count(count: Any, maximum: Optional[int] = None) -> bool:
        if not _is_int(count) or count < 0:
            return False
        return maximum is None or count <= maximum
