import logging
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, TypeVar

from library_ledger.config import settings
from library_ledger.database import is_transient_error
from library_ledger.errors import ContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """How often a contended unit of work is attempted and how long to wait in between."""

    attempts: int = settings.ledger_max_attempts
    backoff: float = settings.ledger_retry_backoff
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)


def run_with_retry(unit_of_work: Callable[[], T], policy: RetryPolicy, label: str = "unit of work") -> T:
    """Call ``unit_of_work`` until it succeeds or stops failing with lock contention.

    Only transient store errors (deadlock, lock timeout, busy database) are retried,
    each time from the beginning. Everything else propagates on the first failure.
    When the last attempt is contended too, ``ContentionError`` is raised.
    """
    attempts = max(1, policy.attempts)
    attempt = 1
    while True:
        try:
            return unit_of_work()
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            if attempt == attempts:
                logger.error("%s still contended after %d attempts: %s", label, attempts, exc)
                raise ContentionError(
                    "The library is busy right now, please try again."
                ) from exc
            logger.warning("%s hit lock contention (attempt %d/%d): %s", label, attempt, attempts, exc)
            policy.sleep(policy.backoff)
            attempt += 1


def with_contention_retry(func):
    """Method decorator: rerun the whole method under ``self.retry_policy``."""
    @wraps(func)
    def wrapper(self, *args, **kwargs):
        return run_with_retry(
            lambda: func(self, *args, **kwargs),
            self.retry_policy,
            label=func.__name__,
        )
    return wrapper
