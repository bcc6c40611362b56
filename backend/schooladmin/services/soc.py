"""
SOC (Security Operations Center) service.

Read side of the audit log plus the incident workflow. Apart from the
incident and pin columns, audit rows are never modified here.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence, Union

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.database import utcnow
from schooladmin.core.errors import NotFoundFailure, ValidationFailure
from schooladmin.models.audit_log import (
    OPEN_INCIDENT_STATUSES,
    AuditAction,
    AuditLog,
    AuditStatus,
    IncidentStatus,
    Priority,
)
from schooladmin.schemas.soc import AuditLogFilter

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000

ALERT_ACTIONS = (
    AuditAction.LOGIN_FAILED.value,
    AuditAction.AUTH_FAILED.value,
    AuditAction.UNAUTHORIZED_ACCESS.value,
)

# Allowed incident status changes; NEW is only set by mark_as_incident
INCIDENT_TRANSITIONS = {
    IncidentStatus.NEW: {
        IncidentStatus.INVESTIGATING,
        IncidentStatus.RESOLVED,
        IncidentStatus.FALSE_POSITIVE,
        IncidentStatus.ESCALATED,
    },
    IncidentStatus.INVESTIGATING: {
        IncidentStatus.RESOLVED,
        IncidentStatus.FALSE_POSITIVE,
        IncidentStatus.ESCALATED,
    },
    IncidentStatus.ESCALATED: {
        IncidentStatus.INVESTIGATING,
        IncidentStatus.RESOLVED,
        IncidentStatus.FALSE_POSITIVE,
    },
    IncidentStatus.RESOLVED: {IncidentStatus.INVESTIGATING},
    IncidentStatus.FALSE_POSITIVE: {IncidentStatus.INVESTIGATING},
}


def _values(value: Union[Any, Sequence[Any]]) -> list[str]:
    items = value if isinstance(value, (list, tuple, set)) else [value]
    return [item.value if hasattr(item, "value") else str(item) for item in items]


def _match(column, value):
    values = _values(value)
    if len(values) == 1:
        return column == values[0]
    return column.in_(values)


def build_conditions(f: AuditLogFilter) -> list:
    conditions = []
    if f.user_id is not None:
        conditions.append(AuditLog.user_id == f.user_id)
    if f.user_email:
        conditions.append(func.lower(AuditLog.user_email).contains(f.user_email.lower()))
    if f.action:
        conditions.append(_match(AuditLog.action, f.action))
    if f.resource:
        conditions.append(_match(AuditLog.resource, f.resource))
    if f.resource_id is not None:
        conditions.append(AuditLog.resource_id == str(f.resource_id))
    if f.status:
        conditions.append(_match(AuditLog.status, f.status))
    if f.incident_status:
        conditions.append(_match(AuditLog.incident_status, f.incident_status))
    if f.priority:
        conditions.append(_match(AuditLog.priority, f.priority))
    if f.assigned_to is not None:
        conditions.append(AuditLog.assigned_to == f.assigned_to)
    if f.start_date is not None:
        conditions.append(AuditLog.created_at >= f.start_date)
    if f.end_date is not None:
        conditions.append(AuditLog.created_at <= f.end_date)
    if f.ip_address:
        conditions.append(AuditLog.ip_address.contains(f.ip_address))
    return conditions


async def get_audit_logs(db: AsyncSession, f: AuditLogFilter) -> dict:
    """
    Query audit logs, newest first.

    Returns:
        ``{"logs", "total", "limit", "offset"}`` where total ignores paging
    """
    if f.limit < 1 or f.offset < 0:
        raise ValidationFailure("limit must be positive and offset non-negative")
    limit = min(f.limit, MAX_PAGE_SIZE)
    conditions = build_conditions(f)

    total = (await db.execute(select(func.count(AuditLog.id)).where(*conditions))).scalar_one()
    result = await db.execute(
        select(AuditLog)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
        .offset(f.offset)
    )
    return {"logs": list(result.scalars().all()), "total": total, "limit": limit, "offset": f.offset}


async def _grouped(db: AsyncSession, column, conditions: list) -> dict[str, int]:
    result = await db.execute(
        select(column, func.count(AuditLog.id)).where(*conditions).where(column.is_not(None)).group_by(column)
    )
    return {key: count for key, count in result.all()}


async def _count(db: AsyncSession, *conditions) -> int:
    return (await db.execute(select(func.count(AuditLog.id)).where(*conditions))).scalar_one()


async def get_audit_stats(
    db: AsyncSession,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    conditions = build_conditions(AuditLogFilter(start_date=start_date, end_date=end_date))
    one_day_ago = utcnow() - timedelta(days=1)
    open_incident = AuditLog.incident_status.in_(OPEN_INCIDENT_STATUSES)

    unique_users = (
        await db.execute(
            select(func.count(func.distinct(AuditLog.user_id))).where(*conditions).where(AuditLog.user_id.is_not(None))
        )
    ).scalar_one()

    return {
        "totalLogs": await _count(db, *conditions),
        "byAction": await _grouped(db, AuditLog.action, conditions),
        "byResource": await _grouped(db, AuditLog.resource, conditions),
        "byStatus": await _grouped(db, AuditLog.status, conditions),
        "byIncidentStatus": await _grouped(db, AuditLog.incident_status, conditions),
        "byPriority": await _grouped(db, AuditLog.priority, conditions),
        "uniqueUsers": unique_users,
        "recentFailures": await _count(
            db, *conditions, AuditLog.status == AuditStatus.FAILURE.value, AuditLog.created_at >= one_day_ago
        ),
        "recentUnauthorizedAttempts": await _count(
            db,
            *conditions,
            AuditLog.action.in_((AuditAction.AUTH_FAILED.value, AuditAction.UNAUTHORIZED_ACCESS.value)),
            AuditLog.created_at >= one_day_ago,
        ),
        "openIncidents": await _count(db, *conditions, open_incident),
        "unassignedIncidents": await _count(db, *conditions, open_incident, AuditLog.assigned_to.is_(None)),
        "pinned": await _count(db, *conditions, AuditLog.is_pinned.is_(True)),
    }


async def get_security_alerts(db: AsyncSession, limit: int = 50) -> list[AuditLog]:
    """Security-relevant failures from the last 24 hours."""
    one_day_ago = utcnow() - timedelta(days=1)
    result = await db.execute(
        select(AuditLog)
        .where(or_(AuditLog.action.in_(ALERT_ACTIONS), AuditLog.status == AuditStatus.FAILURE.value))
        .where(AuditLog.created_at >= one_day_ago)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_open_incidents(db: AsyncSession, limit: int = 100) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.incident_status.in_(OPEN_INCIDENT_STATUSES))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _get_log(db: AsyncSession, log_id: int) -> AuditLog:
    log = await db.get(AuditLog, log_id)
    if log is None:
        raise NotFoundFailure("Audit log")
    return log


def _check_transition(current: Optional[str], target: IncidentStatus) -> None:
    if current is None:
        raise ValidationFailure("Audit log is not an incident; mark it first")
    current_status = IncidentStatus(current)
    if target == current_status:
        return
    if target not in INCIDENT_TRANSITIONS[current_status]:
        raise ValidationFailure(f"Cannot change incident status from {current_status.value} to {target.value}")


async def update_incident(
    db: AsyncSession,
    log_id: int,
    *,
    incident_status: Optional[IncidentStatus] = None,
    priority: Optional[Priority] = None,
    assigned_to: Optional[int] = None,
    analyst_notes: Optional[str] = None,
    resolved_by: Optional[int] = None,
) -> AuditLog:
    log = await _get_log(db, log_id)

    if incident_status is not None:
        incident_status = IncidentStatus(incident_status)
        _check_transition(log.incident_status, incident_status)
        log.incident_status = incident_status.value
        if incident_status in (IncidentStatus.RESOLVED, IncidentStatus.FALSE_POSITIVE):
            log.resolved_at = utcnow()
            if resolved_by is not None:
                log.resolved_by = resolved_by
    if priority is not None:
        log.priority = Priority(priority).value
    if assigned_to is not None:
        log.assigned_to = assigned_to
    if analyst_notes is not None:
        log.analyst_notes = analyst_notes

    await db.commit()
    await db.refresh(log)
    logger.info(f"Incident updated: log={log_id} status={log.incident_status} by={resolved_by}")
    return log


async def mark_as_incident(
    db: AsyncSession,
    log_id: int,
    priority: Priority,
    assigned_to: Optional[int] = None,
) -> AuditLog:
    log = await _get_log(db, log_id)
    log.incident_status = IncidentStatus.NEW.value
    log.priority = Priority(priority).value
    log.resolved_at = None
    log.resolved_by = None
    if assigned_to is not None:
        log.assigned_to = assigned_to
    await db.commit()
    await db.refresh(log)
    logger.info(f"Audit log {log_id} marked as incident with priority {log.priority}")
    return log


async def pin_log(db: AsyncSession, log_id: int, pinned_by: int) -> AuditLog:
    log = await _get_log(db, log_id)
    log.is_pinned = True
    log.pinned_at = utcnow()
    log.pinned_by = pinned_by
    await db.commit()
    await db.refresh(log)
    return log


async def unpin_log(db: AsyncSession, log_id: int) -> AuditLog:
    log = await _get_log(db, log_id)
    log.is_pinned = False
    log.pinned_at = None
    log.pinned_by = None
    await db.commit()
    await db.refresh(log)
    return log


async def get_user_activity(db: AsyncSession, user_id: int, days: int = 30) -> dict:
    since = utcnow() - timedelta(days=days)
    conditions = [AuditLog.user_id == user_id, AuditLog.created_at >= since]
    result = await db.execute(
        select(AuditLog).where(*conditions).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(100)
    )
    return {
        "userId": user_id,
        "days": days,
        "totalActions": await _count(db, *conditions),
        "byAction": await _grouped(db, AuditLog.action, conditions),
        "failures": await _count(db, *conditions, AuditLog.status == AuditStatus.FAILURE.value),
        "recentLogs": list(result.scalars().all()),
    }


async def get_resource_history(db: AsyncSession, resource: str, resource_id: str) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.resource == resource)
        .where(AuditLog.resource_id == str(resource_id))
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(100)
    )
    return list(result.scalars().all())
