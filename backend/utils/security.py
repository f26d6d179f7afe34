"""Password hashing and JWT issuing."""

from __future__ import annotations

from datetime import timedelta

import bcrypt
from jose import jwt

from backend.config import settings
from backend.utils.time import utc_now


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def create_access_token(user_id: int, role: str, expires_minutes: int | None = None) -> str:
    """Issue an access token whose ``sub`` is the user id."""
    expires_minutes = expires_minutes or settings.jwt_expire_minutes
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": utc_now() + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
