from datetime import datetime
from typing import Optional

from pydantic import Field

from schooladmin.schemas.common import CamelModel


class APIKeyCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=255)
    expires_at: Optional[datetime] = None
    permissions: Optional[list[str]] = None
    # Admins may issue keys on behalf of another user
    user_id: Optional[int] = None


class APIKeyResponse(CamelModel):
    """Never includes the key or its hash."""
    id: int
    name: str
    user_id: Optional[int] = None
    permissions: Optional[list[str]] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime


class APIKeyCreatedResponse(APIKeyResponse):
    """Returned once, on creation."""
    key: str
    message: str = "Store this key securely. It will not be shown again."
