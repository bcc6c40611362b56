"""
Permission resolution.

A user holds ``resource:action`` when any of these is true, checked in order:
1. the user is an admin (cached for five minutes per user id)
2. an active UserPermission grants it
3. an active RolePermission on the user's role grants it

Grants may be scoped (``students:read:department:3``). A scoped grant only
applies when the caller passes a context that satisfies the scope; an
unscoped grant satisfies every scoped request for the same resource and
action.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.cache import TTLCache
from schooladmin.core.database import StorageHandleProvider
from schooladmin.core.errors import ValidationFailure
from schooladmin.core.retry import retry_storage_operation
from schooladmin.models.permission import Permission, RolePermission, UserPermission
from schooladmin.models.user import Soldier
from schooladmin.permissions.registry import (
    PageAction,
    find_pages_for_request,
    normalize_api_path,
    page_permission_name,
)

logger = logging.getLogger(__name__)

ADMIN_CACHE_TTL_SECONDS = 5 * 60

SCOPE_TYPES = {"department", "role", "user", "all"}

PUBLIC_API_PATHS = {"/health", "/api/health", "/api/auth/login", "/api/auth/register"}

METHOD_ACTIONS = {
    "GET": "read",
    "HEAD": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}


@dataclass(frozen=True)
class PermissionScope:
    type: str
    value: Optional[str] = None


@dataclass(frozen=True)
class ParsedPermission:
    resource: str
    action: str
    scope: Optional[PermissionScope] = None

    @property
    def base(self) -> str:
        return f"{self.resource}:{self.action}"


def parse_permission(name: str) -> ParsedPermission:
    """
    Parse ``resource:action[:scopeType[:scopeValue]]``.

    Page permissions (``page:<key>:view``) parse with resource ``page`` and
    action ``<key>:view``.
    """
    parts = name.split(":")
    if len(parts) < 2 or not all(parts[:2]):
        raise ValidationFailure(f"Invalid permission format: {name}")
    if parts[0] == "page":
        return ParsedPermission("page", ":".join(parts[1:]))
    resource, action = parts[0], parts[1]
    if len(parts) >= 3 and parts[2] in SCOPE_TYPES:
        value = ":".join(parts[3:]) or None
        return ParsedPermission(resource, action, PermissionScope(parts[2], value))
    if len(parts) > 2:
        return ParsedPermission(resource, ":".join(parts[1:]))
    return ParsedPermission(resource, action)


def scope_matches(scope: Optional[PermissionScope], context: Optional[Mapping]) -> bool:
    if scope is None or scope.type == "all":
        return True
    if not context:
        return False
    key = {"department": "department_id", "role": "role_id", "user": "user_id"}[scope.type]
    actual = context.get(key)
    if actual is None or scope.value is None:
        return False
    return str(actual) == scope.value


def derive_permission_from_request(method: str, path: str) -> Optional[str]:
    """``GET /api/students/4`` -> ``students:read``."""
    segments = [segment for segment in normalize_api_path(path).split("/") if segment]
    if len(segments) < 2:
        return None
    action = METHOD_ACTIONS.get(method.upper())
    if action is None:
        return None
    return f"{segments[1]}:{action}"


@dataclass(frozen=True)
class _UserRecord:
    id: int
    is_admin: bool
    role_id: Optional[int]


class PermissionResolver:
    def __init__(self, storage: StorageHandleProvider, *, admin_cache: Optional[TTLCache[bool]] = None):
        self.storage = storage
        self.admin_cache = admin_cache or TTLCache(ADMIN_CACHE_TTL_SECONDS)

    async def _run(self, operation):
        return await retry_storage_operation(self.storage, operation)

    async def _load_user(self, user_id: int) -> Optional[_UserRecord]:
        async def query(db: AsyncSession):
            result = await db.execute(
                select(Soldier.id, Soldier.is_admin, Soldier.role_id).where(Soldier.id == user_id)
            )
            return result.first()

        row = await self._run(query)
        if row is None:
            self.admin_cache.set(user_id, False)
            return None
        record = _UserRecord(id=row.id, is_admin=bool(row.is_admin), role_id=row.role_id)
        self.admin_cache.set(user_id, record.is_admin)
        return record

    async def is_admin(self, user_id: int) -> bool:
        cached = self.admin_cache.get(user_id)
        if cached is not None:
            return cached
        user = await self._load_user(user_id)
        return bool(user and user.is_admin)

    def invalidate(self, user_id: int) -> None:
        self.admin_cache.invalidate(user_id)

    def clear(self) -> None:
        self.admin_cache.clear()

    async def _user_grants(self, user: _UserRecord, restrict) -> list[str]:
        async def query(db: AsyncSession):
            result = await db.execute(
                restrict(
                    select(Permission.name)
                    .join(UserPermission, UserPermission.permission_id == Permission.id)
                    .where(UserPermission.user_id == user.id)
                    .where(UserPermission.is_active.is_(True))
                )
            )
            return [row[0] for row in result.all()]

        return await self._run(query)

    async def _role_grants(self, user: _UserRecord, restrict) -> list[str]:
        if user.role_id is None:
            return []

        async def query(db: AsyncSession):
            result = await db.execute(
                restrict(
                    select(Permission.name)
                    .join(RolePermission, RolePermission.permission_id == Permission.id)
                    .where(RolePermission.role_id == user.role_id)
                    .where(RolePermission.is_active.is_(True))
                )
            )
            return [row[0] for row in result.all()]

        return await self._run(query)

    @staticmethod
    def _grant_satisfies(grant: str, requested: ParsedPermission, requested_name: str, context) -> bool:
        if grant == requested_name:
            return True
        parsed_grant = parse_permission(grant)
        if parsed_grant.base != requested.base:
            return False
        if parsed_grant.scope is None:
            # Unscoped grant covers every scope of the same resource:action
            return True
        return scope_matches(parsed_grant.scope, context)

    async def has_scoped_permission(
        self,
        user_id: Optional[int],
        permission: str,
        context: Optional[Mapping] = None,
    ) -> bool:
        if user_id is None:
            return False
        if self.admin_cache.get(user_id):
            return True

        user = await self._load_user(user_id)
        if user is None:
            return False
        if user.is_admin:
            return True

        requested = parse_permission(permission)

        def restrict(query):
            return query.where(Permission.resource == requested.resource).where(
                Permission.action == requested.action
            )

        for source in (self._user_grants, self._role_grants):
            for grant in await source(user, restrict):
                if self._grant_satisfies(grant, requested, permission, context):
                    return True
        return False

    async def has_page_permission(self, user_id: Optional[int], page: str, action: PageAction) -> bool:
        names = [page_permission_name(page, "edit")]
        if action == "view":
            names.insert(0, page_permission_name(page, "view"))
        return await self._has_any(user_id, names)

    async def _has_any(self, user_id: Optional[int], names: list[str]) -> bool:
        if user_id is None:
            return False
        user = await self._load_user(user_id)
        if user is None:
            return False
        if user.is_admin:
            return True

        def restrict(query):
            return query.where(Permission.name.in_(names))

        if await self._user_grants(user, restrict):
            return True
        return bool(await self._role_grants(user, restrict))

    async def has_api_permission(self, user_id: Optional[int], method: str, path: str) -> bool:
        """
        Decide whether ``user_id`` may call ``method path``.

        Page grants are consulted first; requests that no page covers fall
        back to a ``resource:action`` permission derived from the path.
        """
        normalized = normalize_api_path(path)
        if normalized in PUBLIC_API_PATHS:
            return True
        if user_id is None:
            return False
        if await self.is_admin(user_id):
            return True

        for page, action in find_pages_for_request(method, normalized):
            if await self.has_page_permission(user_id, page, action):
                return True

        derived = derive_permission_from_request(method, normalized)
        if derived is None:
            return False
        return await self.has_scoped_permission(user_id, derived)
