import logging
import sqlite3
from typing import List, Optional

from library_ledger.book import Book
from library_ledger.database import Database

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = "book_id, title, isbn, total_copies, available_copies, is_retired, created_at"


class Catalog:
    """Book metadata and copy counts.

    Copy counters are only read here; every change to ``available_copies`` goes
    through the checkout ledger.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def add_book(self, book: Book) -> Book:
        """Insert a new title with all of its copies available. ISBNs are unique."""
        if not book.title:
            raise ValueError("Title cannot be empty.")
        if book.total_copies < 0:
            raise ValueError("Total copies cannot be negative.")
        try:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO books (title, isbn, total_copies, available_copies, is_retired) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (book.title, book.isbn, book.total_copies, book.total_copies, int(book.is_retired)),
                )
                book.book_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {book.isbn} already exists.") from e
        book.available_copies = book.total_copies
        logger.info("Added book %s (id=%s, copies=%s)", book.title, book.book_id, book.total_copies)
        return book

    def get_book(self, book_id: int) -> Optional[Book]:
        with self.database.reader() as conn:
            row = conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE book_id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def list_books(self) -> List[Book]:
        """All books ordered by title (fresh on every call)."""
        with self.database.reader() as conn:
            rows = conn.execute(f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY title").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]
