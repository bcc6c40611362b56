"""
Permission grant management.

RolePermission and UserPermission rows are never deleted: revoking sets
``is_active`` to False and granting again reactivates the same row with the
new grantor and timestamp.
"""
import logging
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.database import utcnow
from schooladmin.core.errors import ConflictFailure, NotFoundFailure, ValidationFailure
from schooladmin.models.permission import Permission, RolePermission, UserPermission
from schooladmin.models.user import Role, Soldier
from schooladmin.permissions.presets import get_preset
from schooladmin.permissions.registry import (
    PAGE_PERMISSIONS,
    PageAction,
    get_api_permissions_for_page,
    page_permission_name,
)
from schooladmin.permissions.resolver import parse_permission

logger = logging.getLogger(__name__)

Grant = Union[UserPermission, RolePermission]


async def get_or_create_permission(
    db: AsyncSession,
    resource: str,
    action: str,
    description: Optional[str] = None,
) -> Permission:
    name = f"{resource}:{action}"
    result = await db.execute(select(Permission).where(Permission.name == name))
    permission = result.scalar_one_or_none()
    if permission is None:
        permission = Permission(name=name, resource=resource, action=action, description=description)
        db.add(permission)
        await db.flush()
    return permission


async def get_permission_by_name(db: AsyncSession, name: str) -> Permission:
    """Look up a permission by name, creating it from its parsed parts when missing."""
    parsed = parse_permission(name)
    result = await db.execute(select(Permission).where(Permission.name == name))
    permission = result.scalar_one_or_none()
    if permission is None:
        permission = Permission(name=name, resource=parsed.resource, action=parsed.action)
        db.add(permission)
        await db.flush()
    return permission


async def list_permissions(db: AsyncSession) -> list[Permission]:
    result = await db.execute(select(Permission).order_by(Permission.name))
    return list(result.scalars().all())


async def _require(db: AsyncSession, model, object_id: int, label: str):
    obj = await db.get(model, object_id)
    if obj is None:
        raise NotFoundFailure(label)
    return obj


def _activate(grant: Grant, granted_by: Optional[int]) -> None:
    grant.is_active = True
    grant.granted_by = granted_by
    grant.granted_at = utcnow()


async def grant_user_permission(
    db: AsyncSession,
    user_id: int,
    permission_id: int,
    granted_by: Optional[int] = None,
    *,
    commit: bool = True,
) -> UserPermission:
    await _require(db, Soldier, user_id, "User")
    await _require(db, Permission, permission_id, "Permission")
    result = await db.execute(
        select(UserPermission)
        .where(UserPermission.user_id == user_id)
        .where(UserPermission.permission_id == permission_id)
    )
    grant = result.scalar_one_or_none()
    if grant is not None and grant.is_active:
        raise ConflictFailure("Permission already granted to user")
    if grant is None:
        grant = UserPermission(user_id=user_id, permission_id=permission_id)
        db.add(grant)
    _activate(grant, granted_by)
    if commit:
        await db.commit()
        await db.refresh(grant)
    logger.info(f"Permission {permission_id} granted to user {user_id} by {granted_by}")
    return grant


async def revoke_user_permission(
    db: AsyncSession,
    user_id: int,
    permission_id: int,
    *,
    commit: bool = True,
) -> UserPermission:
    result = await db.execute(
        select(UserPermission)
        .where(UserPermission.user_id == user_id)
        .where(UserPermission.permission_id == permission_id)
    )
    grant = result.scalar_one_or_none()
    if grant is None:
        raise NotFoundFailure("User permission")
    grant.is_active = False
    if commit:
        await db.commit()
        await db.refresh(grant)
    logger.info(f"Permission {permission_id} revoked from user {user_id}")
    return grant


async def grant_role_permission(
    db: AsyncSession,
    role_id: int,
    permission_id: int,
    granted_by: Optional[int] = None,
    *,
    commit: bool = True,
) -> RolePermission:
    await _require(db, Role, role_id, "Role")
    await _require(db, Permission, permission_id, "Permission")
    result = await db.execute(
        select(RolePermission)
        .where(RolePermission.role_id == role_id)
        .where(RolePermission.permission_id == permission_id)
    )
    grant = result.scalar_one_or_none()
    if grant is not None and grant.is_active:
        raise ConflictFailure("Permission already granted to role")
    if grant is None:
        grant = RolePermission(role_id=role_id, permission_id=permission_id)
        db.add(grant)
    _activate(grant, granted_by)
    if commit:
        await db.commit()
        await db.refresh(grant)
    logger.info(f"Permission {permission_id} granted to role {role_id} by {granted_by}")
    return grant


async def revoke_role_permission(
    db: AsyncSession,
    role_id: int,
    permission_id: int,
    *,
    commit: bool = True,
) -> RolePermission:
    result = await db.execute(
        select(RolePermission)
        .where(RolePermission.role_id == role_id)
        .where(RolePermission.permission_id == permission_id)
    )
    grant = result.scalar_one_or_none()
    if grant is None:
        raise NotFoundFailure("Role permission")
    grant.is_active = False
    if commit:
        await db.commit()
        await db.refresh(grant)
    logger.info(f"Permission {permission_id} revoked from role {role_id}")
    return grant


def _check_page(page: str, action: str) -> None:
    if page not in PAGE_PERMISSIONS:
        raise ValidationFailure(f"Unknown page: {page}")
    if action not in ("view", "edit"):
        raise ValidationFailure("Page action must be 'view' or 'edit'")


async def _page_permissions(db: AsyncSession, page: str, action: PageAction) -> list[Permission]:
    """The page permission itself followed by the API permissions it implies."""
    permissions = [await get_or_create_permission(db, "page", f"{page}:{action}")]
    for api in get_api_permissions_for_page(page, action):
        permissions.append(await get_or_create_permission(db, api.resource, api.action))
    return permissions


async def _grant_page(
    db: AsyncSession,
    page: str,
    action: PageAction,
    user_id: Optional[int],
    role_id: Optional[int],
    granted_by: Optional[int],
) -> list[str]:
    granted: list[str] = []
    for permission in await _page_permissions(db, page, action):
        try:
            if user_id is not None:
                await grant_user_permission(db, user_id, permission.id, granted_by, commit=False)
            else:
                await grant_role_permission(db, role_id, permission.id, granted_by, commit=False)
        except ConflictFailure:
            continue
        granted.append(permission.name)
    return granted


def _check_target(user_id: Optional[int], role_id: Optional[int]) -> None:
    if (user_id is None) == (role_id is None):
        raise ValidationFailure("Exactly one of user_id or role_id is required")


async def grant_page_permission(
    db: AsyncSession,
    *,
    page: str,
    action: PageAction,
    user_id: Optional[int] = None,
    role_id: Optional[int] = None,
    granted_by: Optional[int] = None,
) -> list[str]:
    """
    Grant a page permission and all API permissions it implies to a user or role.

    Already-active grants are left untouched. Returns the names newly granted.
    """
    _check_page(page, action)
    _check_target(user_id, role_id)
    granted = await _grant_page(db, page, action, user_id, role_id, granted_by)
    await db.commit()
    return granted


async def revoke_page_permission(
    db: AsyncSession,
    *,
    page: str,
    action: PageAction,
    user_id: Optional[int] = None,
    role_id: Optional[int] = None,
) -> None:
    """Revoke only the page permission; API grants shared with other pages stay."""
    _check_page(page, action)
    _check_target(user_id, role_id)

    permission = await get_or_create_permission(db, "page", f"{page}:{action}")
    if user_id is not None:
        await revoke_user_permission(db, user_id, permission.id, commit=False)
    else:
        await revoke_role_permission(db, role_id, permission.id, commit=False)
    await db.commit()


async def apply_preset(
    db: AsyncSession,
    preset_id: str,
    *,
    user_id: Optional[int] = None,
    role_id: Optional[int] = None,
    granted_by: Optional[int] = None,
) -> list[str]:
    """Grant every page of a preset in one transaction. Returns the names newly granted."""
    preset = get_preset(preset_id)
    if preset is None:
        raise NotFoundFailure("Preset")
    _check_target(user_id, role_id)

    granted: list[str] = []
    for page, action in preset.pages:
        granted.extend(await _grant_page(db, page, action, user_id, role_id, granted_by))
    await db.commit()
    logger.info(f"Preset {preset_id} applied to user={user_id} role={role_id} by {granted_by}")
    return granted


async def _active_direct_grants(
    db: AsyncSession,
    *,
    user_id: Optional[int] = None,
    role_id: Optional[int] = None,
) -> list[Permission]:
    if user_id is not None:
        await _require(db, Soldier, user_id, "User")
        query = (
            select(Permission)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .where(UserPermission.user_id == user_id)
            .where(UserPermission.is_active.is_(True))
        )
    else:
        await _require(db, Role, role_id, "Role")
        query = (
            select(Permission)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
            .where(RolePermission.is_active.is_(True))
        )
    result = await db.execute(query.order_by(Permission.name))
    return list(result.scalars().all())


async def copy_permissions(
    db: AsyncSession,
    *,
    source_user_id: Optional[int] = None,
    source_role_id: Optional[int] = None,
    target_user_id: Optional[int] = None,
    target_role_id: Optional[int] = None,
    granted_by: Optional[int] = None,
) -> list[str]:
    """
    Copy the active grants held by a user or role onto another user or role.

    Only the source's own grants are copied; a user's role grants stay with
    the role. Grants the target already holds are skipped. Returns the names
    newly granted.
    """
    _check_target(source_user_id, source_role_id)
    _check_target(target_user_id, target_role_id)
    if source_user_id is not None and source_user_id == target_user_id:
        raise ValidationFailure("Source and target must differ")
    if source_role_id is not None and source_role_id == target_role_id:
        raise ValidationFailure("Source and target must differ")

    permissions = await _active_direct_grants(db, user_id=source_user_id, role_id=source_role_id)
    granted: list[str] = []
    for permission in permissions:
        try:
            if target_user_id is not None:
                await grant_user_permission(db, target_user_id, permission.id, granted_by, commit=False)
            else:
                await grant_role_permission(db, target_role_id, permission.id, granted_by, commit=False)
        except ConflictFailure:
            continue
        granted.append(permission.name)
    await db.commit()
    return granted


def _page_map(names: set[str], everything: bool = False) -> dict[str, dict[str, bool]]:
    pages = {}
    for key in PAGE_PERMISSIONS:
        edit = everything or page_permission_name(key, "edit") in names
        pages[key] = {"view": edit or page_permission_name(key, "view") in names, "edit": edit}
    return pages


async def _page_grant_names(
    db: AsyncSession,
    *,
    user_id: Optional[int] = None,
    role_id: Optional[int] = None,
) -> set[str]:
    if user_id is not None:
        query = (
            select(Permission.name)
            .join(UserPermission, UserPermission.permission_id == Permission.id)
            .where(UserPermission.user_id == user_id)
            .where(UserPermission.is_active.is_(True))
        )
    else:
        query = (
            select(Permission.name)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id == role_id)
            .where(RolePermission.is_active.is_(True))
        )
    result = await db.execute(query.where(Permission.resource == "page"))
    return {row[0] for row in result.all()}


async def get_user_page_permissions(db: AsyncSession, user_id: int) -> dict[str, dict[str, bool]]:
    """Effective ``{page: {"view": bool, "edit": bool}}`` from direct and role grants."""
    user = await _require(db, Soldier, user_id, "User")
    if user.is_admin:
        return _page_map(set(), everything=True)

    names = await _page_grant_names(db, user_id=user_id)
    if user.role_id is not None:
        names |= await _page_grant_names(db, role_id=user.role_id)
    return _page_map(names)


async def get_role_page_permissions(db: AsyncSession, role_id: int) -> dict[str, dict[str, bool]]:
    await _require(db, Role, role_id, "Role")
    return _page_map(await _page_grant_names(db, role_id=role_id))


async def list_user_permissions(db: AsyncSession, user_id: int) -> list[Permission]:
    """Permissions granted directly to the user (role grants excluded)."""
    return await _active_direct_grants(db, user_id=user_id)


async def get_effective_permissions(db: AsyncSession, user_id: int) -> list[dict]:
    """
    Every permission the user holds, tagged with where it comes from.

    Admins hold every known permission with source ``admin``. Otherwise direct
    grants (``user``) are listed before role grants (``role``); a permission
    held both ways appears once per source.
    """
    user = await _require(db, Soldier, user_id, "User")
    if user.is_admin:
        return [
            {"permission": permission, "source": "admin", "role_id": None}
            for permission in await list_permissions(db)
        ]

    effective = [
        {"permission": permission, "source": "user", "role_id": None}
        for permission in await _active_direct_grants(db, user_id=user_id)
    ]
    if user.role_id is not None:
        effective.extend(
            {"permission": permission, "source": "role", "role_id": user.role_id}
            for permission in await _active_direct_grants(db, role_id=user.role_id)
        )
    return effective


async def list_users_with_permission(db: AsyncSession, permission_id: int) -> list[Soldier]:
    """Users holding the permission through an active direct grant."""
    await _require(db, Permission, permission_id, "Permission")
    result = await db.execute(
        select(Soldier)
        .join(UserPermission, UserPermission.user_id == Soldier.id)
        .where(UserPermission.permission_id == permission_id)
        .where(UserPermission.is_active.is_(True))
        .order_by(Soldier.id)
    )
    return list(result.scalars().all())
