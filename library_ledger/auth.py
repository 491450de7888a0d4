"""Signed bearer tokens.

A token is an HS256 JWT whose ``sub`` claim is the user id. Role and active
status are looked up in the user directory on every request, so deactivating a
user takes effect without revoking tokens.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from library_ledger.config import settings


def create_access_token(user_id: int, expires_minutes: Optional[int] = None) -> str:
    minutes = settings.jwt_expiration_minutes if expires_minutes is None else expires_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    to_encode = {"sub": str(user_id), "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[int]:
    """Return the user id carried by ``token``, or None if it is invalid or expired."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject is None:
        return None
    try:
        return int(subject)
    except (TypeError, ValueError):
        return None
