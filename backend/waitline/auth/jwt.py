"""
JWT token utilities for authentication.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from jose import JWTError, jwt

from waitline.auth.identity import Session
from waitline.config import get_settings


def create_access_token(
    user_id: UUID,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token for a user.

    Args:
        user_id: The user's UUID
        email: Optional email carried in the token
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    settings = get_settings()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_access_token_expire_minutes)
    expire = datetime.now(timezone.utc) + expires_delta

    to_encode = {
        "sub": str(user_id),
        "exp": expire,
        "type": "access",
    }
    if email:
        to_encode["email"] = email

    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> Optional[Session]:
    """
    Decode and validate a JWT access token.

    Returns:
        The Session if valid, None otherwise
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None

    user_id_str = payload.get("sub")
    token_type = payload.get("type")
    if user_id_str is None or token_type != "access":
        return None

    try:
        user_id = UUID(user_id_str)
    except ValueError:
        return None

    return Session(user_id=user_id, email=payload.get("email"))
