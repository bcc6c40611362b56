"""JWT and password hashing helpers."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi.security import APIKeyHeader, HTTPBearer
from jose import jwt

from schooladmin.core.config import Settings, get_settings

# OpenAPI security schemes declared by every gated route; parsing happens in the gatekeeper
bearer_scheme = HTTPBearer(auto_error=False)
api_key_scheme = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def create_access_token(
    user_id: int,
    *,
    email: Optional[str] = None,
    personal_number: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Settings] = None,
) -> str:
    settings = settings or get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {
        "sub": str(user_id),
        "userId": user_id,
        "personalNumber": personal_number,
        "email": email,
        "exp": expire,
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, settings: Optional[Settings] = None) -> dict:
    """
    Decode and validate a JWT.

    Raises:
        jose.ExpiredSignatureError: token is past its ``exp`` claim
        jose.JWTError: any other signature or format problem
    """
    settings = settings or get_settings()
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
