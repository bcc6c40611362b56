from typing import Optional

from pydantic import EmailStr, Field

from schooladmin.schemas.common import CamelModel


class LoginRequest(CamelModel):
    personal_number: str = Field(..., min_length=1, max_length=32)
    password: str = Field(..., min_length=1, max_length=128)


class RegisterRequest(CamelModel):
    personal_number: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    password: str = Field(..., min_length=8, max_length=128)


class Token(CamelModel):
    access_token: str
    token_type: str = "bearer"


class SoldierResponse(CamelModel):
    id: int
    personal_number: str
    name: str
    email: Optional[str] = None
    is_admin: bool
    role_id: Optional[int] = None
    department_id: Optional[int] = None


class CsrfTokenResponse(CamelModel):
    csrf_token: str
