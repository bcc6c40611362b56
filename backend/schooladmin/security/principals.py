"""Authenticated identities and authentication outcomes."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class AuthMethod(str, Enum):
    API_KEY = "API_KEY"
    JWT = "JWT"
    UNAUTHENTICATED = "UNAUTHENTICATED"


class AuthFailureReason(str, Enum):
    MISSING = "MISSING"
    INVALID_TOKEN = "INVALID_TOKEN"
    EXPIRED_TOKEN = "EXPIRED_TOKEN"
    MALFORMED = "MALFORMED"
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class UserIdentity:
    user_id: int
    email: Optional[str] = None
    personal_number: Optional[str] = None

    @property
    def effective_user_id(self) -> Optional[int]:
        return self.user_id

    @property
    def auth_method(self) -> AuthMethod:
        return AuthMethod.JWT


@dataclass(frozen=True)
class APIKeyIdentity:
    api_key_id: int
    name: str
    user_id: Optional[int] = None
    permissions: Optional[list[str]] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True

    @property
    def effective_user_id(self) -> Optional[int]:
        return self.user_id

    @property
    def auth_method(self) -> AuthMethod:
        return AuthMethod.API_KEY


Principal = Union[UserIdentity, APIKeyIdentity]


@dataclass(frozen=True)
class AuthFailure:
    reason: AuthFailureReason
    method: AuthMethod
    message: str = field(default="Authentication failed")
