from __future__ import annotations


class Book:
    """A catalog title and its copy counters."""

    def __init__(self, title: str, isbn: str | None = None, total_copies: int = 0,
                 available_copies: int | None = None, is_retired: bool = False,
                 book_id: int | None = None, created_at: str | None = None) -> None:
        self.book_id = book_id
        self.title = title.strip()
        self.isbn = isbn.strip() if isbn else None
        self.total_copies = total_copies
        # A new title starts with every copy on the shelf
        self.available_copies = total_copies if available_copies is None else available_copies
        self.is_retired = bool(is_retired)
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} (ISBN: {self.isbn}) {self.available_copies}/{self.total_copies} available"

    @property
    def checked_out_copies(self) -> int:
        return self.total_copies - self.available_copies

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "isbn": self.isbn,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "is_retired": self.is_retired,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            book_id=data.get("book_id"),
            title=data["title"],
            isbn=data.get("isbn"),
            total_copies=data.get("total_copies", 0),
            available_copies=data.get("available_copies"),
            is_retired=bool(data.get("is_retired", False)),
            created_at=data.get("created_at"),
        )
