import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from library_ledger.config import settings

logger = logging.getLogger(__name__)

# Fixed-width timestamps so that string comparison in SQL matches chronological order.
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# sqlite3.OperationalError messages that mean "another writer holds the lock, try again".
_TRANSIENT_MARKERS = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
    "deadlock",
    "lock wait timeout",
    "busy",
)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.strptime(raw[:19], TIMESTAMP_FORMAT)


def is_transient_error(exc: BaseException) -> bool:
    """True when the store reports lock contention rather than a real failure."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class Database:
    """Handle to the SQLite store shared by the catalog, the user directory and the ledger.

    Every unit of work opens its own connection, so one ``Database`` can be shared
    by concurrent request threads. Writers are serialized by ``BEGIN IMMEDIATE``,
    which takes the database write lock up front: once a transaction has read a
    book row, no other writer can change it until commit or rollback.
    """

    def __init__(self, db_file: Optional[str] = None, busy_timeout: Optional[float] = None) -> None:
        self.db_file = db_file or settings.database_file
        self.busy_timeout = settings.db_busy_timeout if busy_timeout is None else busy_timeout

    def connect(self) -> sqlite3.Connection:
        """Open a new autocommit connection; transactions are started explicitly."""
        conn = sqlite3.connect(
            self.db_file,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block as one all-or-nothing unit of work.

        Commits when the block exits normally; any exception rolls back and
        propagates unchanged so the caller can decide whether to retry.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error:
                    logger.exception("Rollback failed on %s", self.db_file)
            raise
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Connection for read-only queries; no write lock is taken."""
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    def create_tables(self) -> None:
        """Create the tables and indexes if they do not exist yet."""
        conn = self.connect()
        try:
            # WAL is stored in the file and lets readers proceed while a writer holds the lock
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("BEGIN")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT UNIQUE NOT NULL,
                    user_type TEXT NOT NULL CHECK(user_type IN ('reader', 'staff')),
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    book_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    isbn TEXT UNIQUE,
                    total_copies INTEGER NOT NULL DEFAULT 0 CHECK(total_copies >= 0),
                    available_copies INTEGER NOT NULL DEFAULT 0
                        CHECK(available_copies >= 0 AND available_copies <= total_copies),
                    is_retired INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS checkouts (
                    checkout_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    book_id INTEGER NOT NULL,
                    checkout_date TEXT NOT NULL,
                    due_date TEXT NOT NULL,
                    return_date TEXT,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK(status IN ('active', 'returned', 'overdue')),
                    is_late INTEGER NOT NULL DEFAULT 0,
                    late_fee TEXT NOT NULL DEFAULT '0.00',
                    FOREIGN KEY (user_id) REFERENCES users(user_id),
                    FOREIGN KEY (book_id) REFERENCES books(book_id)
                )
            """)

            # Inventory adjustments and other staff actions, append-only
            conn.execute("""
                CREATE TABLE IF NOT EXISTS staff_logs (
                    log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    staff_id INTEGER NOT NULL,
                    action_type TEXT NOT NULL,
                    target_table TEXT NOT NULL,
                    target_id INTEGER NOT NULL,
                    old_values TEXT,
                    new_values TEXT,
                    action_timestamp TEXT NOT NULL,
                    FOREIGN KEY (staff_id) REFERENCES users(user_id)
                )
            """)

            # One active loan per (user, book)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_checkouts_one_active
                ON checkouts(user_id, book_id) WHERE status = 'active'
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_user_status ON checkouts(user_id, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_checkouts_due_date ON checkouts(due_date)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_staff_logs_action ON staff_logs(action_type, action_timestamp)")
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Make sure the database file's directory exists and the schema is current."""
        directory = os.path.dirname(os.path.abspath(self.db_file))
        os.makedirs(directory, exist_ok=True)
        self.create_tables()
        logger.debug("Database ready at %s", self.db_file)
