"""
SOC endpoints: audit log search, statistics, the incident workflow and the
IP block / trust lists.
"""
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.audit.context import RequestContext
from schooladmin.core.database import get_db
from schooladmin.models.audit_log import AuditResource
from schooladmin.schemas.common import MessageResponse
from schooladmin.schemas.soc import (
    AuditLogFilter,
    AuditLogPage,
    AuditLogResponse,
    BlockedIPResponse,
    BlockIPRequest,
    IncidentUpdate,
    MarkIncidentRequest,
    TrustedUserCreate,
    TrustedUserResponse,
    UserActivity,
)
from schooladmin.security.gatekeeper import ROUTE_PERMISSION, Gate, get_gatekeeper
from schooladmin.services import soc as soc_service

router = APIRouter()

AuditContext = Annotated[
    RequestContext, Depends(Gate(permission=ROUTE_PERMISSION, audit_resource=AuditResource.AUDIT_LOG))
]
SecurityContext = Annotated[
    RequestContext, Depends(Gate(permission=ROUTE_PERMISSION, audit_resource=AuditResource.SECURITY))
]
TrustContext = Annotated[
    RequestContext, Depends(Gate(permission=ROUTE_PERMISSION, audit_resource=AuditResource.TRUSTED_USER))
]
Session = Annotated[AsyncSession, Depends(get_db)]


def _multi(values: Optional[list[str]]) -> Optional[list[str]]:
    """Accept both ``?action=A&action=B`` and ``?action=A,B``."""
    if not values:
        return None
    return [item.strip() for value in values for item in value.split(",") if item.strip()] or None


@router.get("/audit-logs", response_model=AuditLogPage)
async def get_audit_logs(
    ctx: AuditContext,
    db: Session,
    user_id: Annotated[Optional[int], Query(alias="userId")] = None,
    user_email: Annotated[Optional[str], Query(alias="userEmail")] = None,
    action: Annotated[Optional[list[str]], Query()] = None,
    resource: Annotated[Optional[list[str]], Query()] = None,
    resource_id: Annotated[Optional[str], Query(alias="resourceId")] = None,
    audit_status: Annotated[Optional[list[str]], Query(alias="status")] = None,
    incident_status: Annotated[Optional[list[str]], Query(alias="incidentStatus")] = None,
    priority: Annotated[Optional[list[str]], Query()] = None,
    assigned_to: Annotated[Optional[int], Query(alias="assignedTo")] = None,
    start_date: Annotated[Optional[datetime], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[datetime], Query(alias="endDate")] = None,
    ip_address: Annotated[Optional[str], Query(alias="ipAddress")] = None,
    limit: Annotated[int, Query(ge=1, le=soc_service.MAX_PAGE_SIZE)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    filters = AuditLogFilter(
        user_id=user_id,
        user_email=user_email,
        action=_multi(action),
        resource=_multi(resource),
        resource_id=resource_id,
        status=_multi(audit_status),
        incident_status=_multi(incident_status),
        priority=_multi(priority),
        assigned_to=assigned_to,
        start_date=start_date,
        end_date=end_date,
        ip_address=ip_address,
        limit=limit,
        offset=offset,
    )
    return await soc_service.get_audit_logs(db, filters)


@router.get("/stats")
async def get_stats(
    ctx: AuditContext,
    db: Session,
    start_date: Annotated[Optional[datetime], Query(alias="startDate")] = None,
    end_date: Annotated[Optional[datetime], Query(alias="endDate")] = None,
):
    return await soc_service.get_audit_stats(db, start_date, end_date)


@router.get("/alerts", response_model=list[AuditLogResponse])
async def get_alerts(ctx: AuditContext, db: Session):
    return await soc_service.get_security_alerts(db)


@router.get("/incidents", response_model=list[AuditLogResponse])
async def get_incidents(ctx: AuditContext, db: Session):
    return await soc_service.get_open_incidents(db)


@router.put("/incidents/{log_id}", response_model=AuditLogResponse)
async def update_incident(log_id: int, update: IncidentUpdate, ctx: AuditContext, db: Session):
    return await soc_service.update_incident(
        db,
        log_id,
        incident_status=update.incident_status,
        priority=update.priority,
        assigned_to=update.assigned_to,
        analyst_notes=update.analyst_notes,
        resolved_by=ctx.user_id,
    )


@router.post("/incidents/{log_id}/mark", response_model=AuditLogResponse)
async def mark_incident(log_id: int, mark: MarkIncidentRequest, ctx: AuditContext, db: Session):
    return await soc_service.mark_as_incident(db, log_id, mark.priority, mark.assigned_to)


@router.post("/audit-logs/{log_id}/pin", response_model=AuditLogResponse)
async def pin_audit_log(log_id: int, ctx: AuditContext, db: Session):
    return await soc_service.pin_log(db, log_id, ctx.user_id)


@router.delete("/audit-logs/{log_id}/pin", response_model=AuditLogResponse)
async def unpin_audit_log(log_id: int, ctx: AuditContext, db: Session):
    return await soc_service.unpin_log(db, log_id)


@router.get("/users/{user_id}/activity", response_model=UserActivity)
async def get_user_activity(
    user_id: int,
    ctx: AuditContext,
    db: Session,
    days: Annotated[int, Query(ge=1, le=365)] = 30,
):
    return await soc_service.get_user_activity(db, user_id, days)


@router.get("/resources/{resource}/{resource_id}", response_model=list[AuditLogResponse])
async def get_resource_history(resource: str, resource_id: str, ctx: AuditContext, db: Session):
    return await soc_service.get_resource_history(db, resource.upper(), resource_id)


@router.get("/blocked-ips", response_model=list[BlockedIPResponse])
async def list_blocked_ips(
    request: Request,
    ctx: SecurityContext,
    active_only: Annotated[bool, Query(alias="activeOnly")] = True,
):
    return await get_gatekeeper(request).ip_blocks.list_blocked_ips(active_only)


@router.post("/blocked-ips", response_model=BlockedIPResponse, status_code=status.HTTP_201_CREATED)
async def block_ip(block: BlockIPRequest, request: Request, ctx: SecurityContext):
    return await get_gatekeeper(request).ip_blocks.block_ip(
        block.ip_address,
        reason=block.reason,
        blocked_by=ctx.user_id,
        expires_at=block.expires_at,
    )


@router.delete("/blocked-ips/{ip_address}", response_model=BlockedIPResponse)
async def unblock_ip(ip_address: str, request: Request, ctx: SecurityContext):
    return await get_gatekeeper(request).ip_blocks.unblock_ip(ip_address)


@router.get("/trusted-users", response_model=list[TrustedUserResponse])
async def list_trusted_users(
    request: Request,
    ctx: TrustContext,
    active_only: Annotated[bool, Query(alias="activeOnly")] = True,
):
    return await get_gatekeeper(request).trust.list_trusted_users(active_only)


@router.post("/trusted-users", response_model=TrustedUserResponse, status_code=status.HTTP_201_CREATED)
async def add_trusted_user(entry: TrustedUserCreate, request: Request, ctx: TrustContext):
    return await get_gatekeeper(request).trust.add_trusted_user(
        user_id=entry.user_id,
        ip_address=entry.ip_address,
        email=entry.email,
        reason=entry.reason,
        expires_at=entry.expires_at,
        created_by=ctx.user_id,
    )


@router.delete("/trusted-users/{trusted_id}", response_model=MessageResponse)
async def remove_trusted_user(trusted_id: int, request: Request, ctx: TrustContext):
    await get_gatekeeper(request).trust.remove_trusted_user(trusted_id)
    return MessageResponse(message="Trusted user removed")
