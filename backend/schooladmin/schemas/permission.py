from datetime import datetime
from typing import Literal, Optional

from pydantic import Field

from schooladmin.schemas.common import CamelModel


class PermissionCreate(CamelModel):
    resource: str = Field(..., min_length=1, max_length=100, pattern=r"^[a-z0-9_-]+$")
    action: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class PermissionResponse(CamelModel):
    id: int
    name: str
    resource: str
    action: str
    description: Optional[str] = None


class GrantRequest(CamelModel):
    permission_id: int


class GrantResponse(CamelModel):
    id: int
    permission_id: int
    is_active: bool
    granted_by: Optional[int] = None
    granted_at: datetime


class PageGrantRequest(CamelModel):
    page: str
    action: Literal["view", "edit"]


class PageGrantResponse(CamelModel):
    page: str
    action: str
    granted: list[str]


class PageAccess(CamelModel):
    view: bool
    edit: bool


class PageDescriptor(CamelModel):
    page: str
    name: str
    category: str


class EffectivePermission(CamelModel):
    permission: PermissionResponse
    source: Literal["admin", "user", "role"]
    role_id: Optional[int] = None


class PresetPage(CamelModel):
    page: str
    action: str


class PresetResponse(CamelModel):
    id: str
    name: str
    description: str
    pages: list[PresetPage]


class ApplyPresetRequest(CamelModel):
    preset_id: str = Field(..., min_length=1)


class CopyFromUserRequest(CamelModel):
    source_user_id: int = Field(..., gt=0)


class CopyFromRoleRequest(CamelModel):
    role_id: int = Field(..., gt=0)


class CopyFromSourceRoleRequest(CamelModel):
    source_role_id: int = Field(..., gt=0)


class GrantedPermissions(CamelModel):
    granted: list[str]
