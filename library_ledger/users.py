from __future__ import annotations

import logging
import sqlite3
from typing import List, Optional

from library_ledger.database import Database

logger = logging.getLogger(__name__)

READER = "reader"
STAFF = "staff"
USER_TYPES = (READER, STAFF)


class User:
    def __init__(self, user_id: int, username: str, user_type: str = READER, is_active: bool = True) -> None:
        self.user_id = user_id
        self.username = username
        self.user_type = user_type
        self.is_active = bool(is_active)

    @property
    def is_reader(self) -> bool:
        return self.is_active and self.user_type == READER

    @property
    def is_staff(self) -> bool:
        return self.is_active and self.user_type == STAFF

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "user_type": self.user_type,
            "is_active": self.is_active,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            user_id=data["user_id"],
            username=data["username"],
            user_type=data["user_type"],
            is_active=bool(data.get("is_active", True)),
        )


class UserDirectory:
    """Who is allowed to do what: reader and staff capabilities."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def add_user(self, username: str, user_type: str = READER) -> User:
        username = (username or "").strip()
        if not username:
            raise ValueError("Username cannot be empty.")
        user_type = user_type.lower()
        if user_type not in USER_TYPES:
            raise ValueError(f"Unknown user type {user_type!r}; expected one of {', '.join(USER_TYPES)}.")
        try:
            with self.database.transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO users (username, user_type) VALUES (?, ?)",
                    (username, user_type),
                )
                user_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError(f"User {username} already exists.") from e
        logger.info("Registered %s %s (id=%s)", user_type, username, user_id)
        return User(user_id=user_id, username=username, user_type=user_type)

    def get_user(self, user_id: int) -> Optional[User]:
        with self.database.reader() as conn:
            row = conn.execute(
                "SELECT user_id, username, user_type, is_active FROM users WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return User.from_dict(dict(row)) if row else None

    def find_by_username(self, username: str) -> Optional[User]:
        with self.database.reader() as conn:
            row = conn.execute(
                "SELECT user_id, username, user_type, is_active FROM users WHERE username = ?",
                (username.strip(),),
            ).fetchone()
        return User.from_dict(dict(row)) if row else None

    def list_users(self) -> List[User]:
        with self.database.reader() as conn:
            rows = conn.execute(
                "SELECT user_id, username, user_type, is_active FROM users ORDER BY user_id"
            ).fetchall()
        return [User.from_dict(dict(row)) for row in rows]

    def set_active(self, user_id: int, active: bool) -> bool:
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE users SET is_active = ? WHERE user_id = ?",
                (1 if active else 0, user_id),
            )
        return cursor.rowcount > 0

    def is_active_reader(self, user_id: int) -> bool:
        user = self.get_user(user_id)
        return user is not None and user.is_reader

    def is_staff(self, user_id: int) -> bool:
        user = self.get_user(user_id)
        return user is not None and user.is_staff
