import os
from datetime import datetime, timedelta

import pytest

from library_ledger.book import Book
from library_ledger.catalog import Catalog
from library_ledger.database import Database
from library_ledger.ledger import CheckoutLedger
from library_ledger.retry import RetryPolicy
from library_ledger.users import READER, STAFF, UserDirectory


class FakeClock:
    """Controllable ``now`` for due-date arithmetic."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    def __init__(self) -> None:
        self.calls = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    path = str(tmp_path / f"ledger_{request.node.name}.db")
    yield path
    for suffix in ("", "-wal", "-shm"):
        if os.path.exists(path + suffix):
            try:
                os.remove(path + suffix)
            except OSError:
                pass


@pytest.fixture
def database(db_file):
    db = Database(db_file)
    db.initialize()
    return db


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def users(database):
    return UserDirectory(database)


@pytest.fixture
def catalog(database):
    return Catalog(database)


@pytest.fixture
def ledger(database, users, clock, sleeper):
    return CheckoutLedger(database, users=users, clock=clock,
                          retry_policy=RetryPolicy(attempts=3, backoff=1.0, sleep=sleeper))


@pytest.fixture
def reader(users):
    return users.add_user("ada", READER)


@pytest.fixture
def other_reader(users):
    return users.add_user("grace", READER)


@pytest.fixture
def staff(users):
    return users.add_user("librarian", STAFF)


@pytest.fixture
def make_book(catalog):
    counter = {"n": 0}

    def _make(title: str = "Dune", copies: int = 2, **kwargs) -> Book:
        counter["n"] += 1
        isbn = kwargs.pop("isbn", f"97800000000{counter['n']:02d}")
        return catalog.add_book(Book(title=title, isbn=isbn, total_copies=copies, **kwargs))

    return _make
