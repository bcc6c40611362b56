from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import Field

from schooladmin.models.audit_log import IncidentStatus, Priority
from schooladmin.schemas.common import CamelModel


@dataclass
class AuditLogFilter:
    user_id: Optional[int] = None
    user_email: Optional[str] = None
    action: Optional[Union[str, list[str]]] = None
    resource: Optional[Union[str, list[str]]] = None
    resource_id: Optional[str] = None
    status: Optional[Union[str, list[str]]] = None
    incident_status: Optional[Union[str, list[str]]] = None
    priority: Optional[Union[str, list[str]]] = None
    assigned_to: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    ip_address: Optional[str] = None
    limit: int = 100
    offset: int = 0


class AuditLogResponse(CamelModel):
    id: int
    user_id: Optional[int] = None
    user_email: Optional[str] = None
    api_key_id: Optional[int] = None
    action: str
    resource: str
    resource_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    http_method: Optional[str] = None
    http_path: Optional[str] = None
    request_size: Optional[int] = None
    response_size: Optional[int] = None
    response_time: Optional[int] = None
    created_at: datetime
    incident_status: Optional[str] = None
    priority: Optional[str] = None
    assigned_to: Optional[int] = None
    analyst_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[int] = None
    is_pinned: bool = False
    pinned_at: Optional[datetime] = None
    pinned_by: Optional[int] = None


class AuditLogPage(CamelModel):
    logs: list[AuditLogResponse]
    total: int
    limit: int
    offset: int


class IncidentUpdate(CamelModel):
    incident_status: Optional[IncidentStatus] = None
    priority: Optional[Priority] = None
    assigned_to: Optional[int] = None
    analyst_notes: Optional[str] = Field(default=None, max_length=5000)


class MarkIncidentRequest(CamelModel):
    priority: Priority
    assigned_to: Optional[int] = None


class BlockIPRequest(CamelModel):
    ip_address: str = Field(..., min_length=1, max_length=45)
    reason: Optional[str] = Field(default=None, max_length=500)
    expires_at: Optional[datetime] = None


class BlockedIPResponse(CamelModel):
    id: int
    ip_address: str
    reason: Optional[str] = None
    blocked_by: Optional[int] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    created_at: datetime


class TrustedUserCreate(CamelModel):
    user_id: Optional[int] = None
    ip_address: Optional[str] = Field(default=None, max_length=45)
    email: Optional[str] = Field(default=None, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=500)
    expires_at: Optional[datetime] = None


class TrustedUserResponse(CamelModel):
    id: int
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    email: Optional[str] = None
    reason: Optional[str] = None
    is_active: bool
    expires_at: Optional[datetime] = None
    created_by: Optional[int] = None
    created_at: datetime


class UserActivity(CamelModel):
    user_id: int
    days: int
    total_actions: int
    by_action: dict[str, int]
    failures: int
    recent_logs: list[AuditLogResponse]
