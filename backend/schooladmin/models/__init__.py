# Models module
from schooladmin.models.user import Soldier, Role, Department
from schooladmin.models.permission import Permission, RolePermission, UserPermission
from schooladmin.models.api_key import APIKey
from schooladmin.models.security import TrustedUser, BlockedIP
from schooladmin.models.audit_log import (
    AuditLog,
    AuditAction,
    AuditResource,
    AuditStatus,
    Priority,
    IncidentStatus,
)

__all__ = [
    "Soldier",
    "Role",
    "Department",
    "Permission",
    "RolePermission",
    "UserPermission",
    "APIKey",
    "TrustedUser",
    "BlockedIP",
    "AuditLog",
    "AuditAction",
    "AuditResource",
    "AuditStatus",
    "Priority",
    "IncidentStatus",
]
