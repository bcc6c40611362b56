"""
Audit Log Model

Append-only record of every audited request and security event. Only the
incident workflow columns (status, priority, assignment, notes, pinning) are
ever updated after creation, and only by SOC operations.

Enumeration values are stored verbatim as strings and are part of the
contract with the SOC UI.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from schooladmin.core.database import Base, utcnow


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    LOGIN_FAILED = "LOGIN_FAILED"
    REGISTER = "REGISTER"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    READ = "READ"
    READ_LIST = "READ_LIST"
    AUTH_FAILED = "AUTH_FAILED"
    AUTH_SUCCESS = "AUTH_SUCCESS"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CSRF_ATTEMPT = "CSRF_ATTEMPT"
    ADMIN_ACCESS = "ADMIN_ACCESS"


class AuditResource(str, Enum):
    AUTH = "AUTH"
    SOLDIER = "SOLDIER"
    DEPARTMENT = "DEPARTMENT"
    ROLE = "ROLE"
    ROOM = "ROOM"
    AUDIT_LOG = "AUDIT_LOG"
    SYSTEM = "SYSTEM"
    STUDENT = "STUDENT"
    COHORT = "COHORT"
    STUDENT_EXIT = "STUDENT_EXIT"
    API_KEY = "API_KEY"
    TRUSTED_USER = "TRUSTED_USER"
    SECURITY = "SECURITY"
    PERMISSION = "PERMISSION"


class AuditStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ERROR = "ERROR"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IncidentStatus(str, Enum):
    NEW = "NEW"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    ESCALATED = "ESCALATED"


OPEN_INCIDENT_STATUSES = (
    IncidentStatus.NEW.value,
    IncidentStatus.INVESTIGATING.value,
    IncidentStatus.ESCALATED.value,
)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_created_at", "created_at"),
        Index("ix_audit_logs_action_resource", "action", "resource"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Actor
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    user_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    api_key_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    # What happened
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    resource: Mapped[str] = mapped_column(String(32), nullable=False)
    resource_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Request metadata
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True, index=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    http_method: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    http_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    request_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    response_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, comment="Latency in ms")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # Incident workflow
    incident_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    priority: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    assigned_to: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    analyst_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Pinning; pinned_by is NULL for automatic pins
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pinned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pinned_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AuditLog(id={self.id}, action={self.action}, "
            f"resource={self.resource}, status={self.status})>"
        )
