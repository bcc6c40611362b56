from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.audit.context import RequestContext
from schooladmin.core.database import get_db
from schooladmin.core.errors import ConflictFailure, NotFoundFailure
from schooladmin.models.audit_log import AuditResource
from schooladmin.models.permission import Permission
from schooladmin.permissions import service as permission_service
from schooladmin.permissions.presets import PERMISSION_PRESETS
from schooladmin.permissions.registry import PAGE_PERMISSIONS
from schooladmin.schemas.auth import SoldierResponse
from schooladmin.schemas.common import MessageResponse
from schooladmin.schemas.permission import (
    ApplyPresetRequest,
    CopyFromRoleRequest,
    CopyFromSourceRoleRequest,
    CopyFromUserRequest,
    EffectivePermission,
    GrantedPermissions,
    GrantRequest,
    GrantResponse,
    PageAccess,
    PageDescriptor,
    PageGrantRequest,
    PageGrantResponse,
    PermissionCreate,
    PermissionResponse,
    PresetPage,
    PresetResponse,
)
from schooladmin.security.gatekeeper import ROUTE_PERMISSION, Gate

router = APIRouter()

# Any signed-in principal, for looking at its own permissions
SelfContext = Annotated[RequestContext, Depends(Gate(audit_resource=AuditResource.PERMISSION))]
ReadContext = Annotated[
    RequestContext, Depends(Gate(permission=ROUTE_PERMISSION, audit_resource=AuditResource.PERMISSION))
]
AdminContext = Annotated[
    RequestContext, Depends(Gate(admin_only=True, audit_resource=AuditResource.PERMISSION))
]
Session = Annotated[AsyncSession, Depends(get_db)]


@router.get("", response_model=list[PermissionResponse])
async def list_permissions(ctx: ReadContext, db: Session):
    return await permission_service.list_permissions(db)


@router.post("", response_model=PermissionResponse, status_code=status.HTTP_201_CREATED)
async def create_permission(permission_in: PermissionCreate, ctx: AdminContext, db: Session):
    name = f"{permission_in.resource}:{permission_in.action}"
    result = await db.execute(select(Permission.id).where(Permission.name == name))
    if result.first() is not None:
        raise ConflictFailure(f"Permission {name} already exists")
    permission = await permission_service.get_or_create_permission(
        db, permission_in.resource, permission_in.action, permission_in.description
    )
    await db.commit()
    await db.refresh(permission)
    return permission


@router.get("/my-permissions", response_model=list[EffectivePermission])
async def get_my_permissions(ctx: SelfContext, db: Session):
    if ctx.user_id is None:
        return []
    return await permission_service.get_effective_permissions(db, ctx.user_id)


@router.get("/my-page-permissions", response_model=dict[str, PageAccess])
async def get_my_page_permissions(ctx: SelfContext, db: Session):
    if ctx.user_id is None:
        return {key: PageAccess(view=False, edit=False) for key in PAGE_PERMISSIONS}
    return await permission_service.get_user_page_permissions(db, ctx.user_id)


@router.get("/pages", response_model=list[PageDescriptor])
async def list_pages(ctx: ReadContext):
    return [
        PageDescriptor(page=page.page, name=page.name, category=page.category)
        for page in PAGE_PERMISSIONS.values()
    ]


@router.get("/presets", response_model=list[PresetResponse])
async def list_presets(ctx: AdminContext):
    return [
        PresetResponse(
            id=preset.id,
            name=preset.name,
            description=preset.description,
            pages=[PresetPage(page=page, action=action) for page, action in preset.pages],
        )
        for preset in PERMISSION_PRESETS.values()
    ]


@router.get("/users/{user_id}/page-permissions", response_model=dict[str, PageAccess])
async def get_user_page_permissions(user_id: int, ctx: AdminContext, db: Session):
    return await permission_service.get_user_page_permissions(db, user_id)


@router.get("/users/{user_id}", response_model=list[PermissionResponse])
async def list_user_permissions(user_id: int, ctx: AdminContext, db: Session):
    return await permission_service.list_user_permissions(db, user_id)


@router.post("/users/{user_id}/grant", response_model=GrantResponse)
async def grant_user_permission(user_id: int, grant: GrantRequest, ctx: AdminContext, db: Session):
    return await permission_service.grant_user_permission(db, user_id, grant.permission_id, ctx.user_id)


@router.post("/users/{user_id}/revoke", response_model=GrantResponse)
async def revoke_user_permission(user_id: int, grant: GrantRequest, ctx: AdminContext, db: Session):
    return await permission_service.revoke_user_permission(db, user_id, grant.permission_id)


@router.post("/users/{user_id}/grant-page", response_model=PageGrantResponse)
async def grant_user_page_permission(user_id: int, grant: PageGrantRequest, ctx: AdminContext, db: Session):
    granted = await permission_service.grant_page_permission(
        db, page=grant.page, action=grant.action, user_id=user_id, granted_by=ctx.user_id
    )
    return PageGrantResponse(page=grant.page, action=grant.action, granted=granted)


@router.post("/users/{user_id}/revoke-page", response_model=MessageResponse)
async def revoke_user_page_permission(user_id: int, grant: PageGrantRequest, ctx: AdminContext, db: Session):
    await permission_service.revoke_page_permission(db, page=grant.page, action=grant.action, user_id=user_id)
    return MessageResponse(message=f"Page permission {grant.page}:{grant.action} revoked")


@router.post("/users/{user_id}/apply-preset", response_model=GrantedPermissions)
async def apply_preset_to_user(user_id: int, body: ApplyPresetRequest, ctx: AdminContext, db: Session):
    granted = await permission_service.apply_preset(db, body.preset_id, user_id=user_id, granted_by=ctx.user_id)
    return GrantedPermissions(granted=granted)


@router.post("/users/{user_id}/copy-from-user", response_model=GrantedPermissions)
async def copy_permissions_from_user(user_id: int, body: CopyFromUserRequest, ctx: AdminContext, db: Session):
    granted = await permission_service.copy_permissions(
        db, source_user_id=body.source_user_id, target_user_id=user_id, granted_by=ctx.user_id
    )
    return GrantedPermissions(granted=granted)


@router.post("/users/{user_id}/copy-from-role", response_model=GrantedPermissions)
async def copy_permissions_from_role_to_user(
    user_id: int, body: CopyFromRoleRequest, ctx: AdminContext, db: Session
):
    granted = await permission_service.copy_permissions(
        db, source_role_id=body.role_id, target_user_id=user_id, granted_by=ctx.user_id
    )
    return GrantedPermissions(granted=granted)


@router.get("/roles/{role_id}/page-permissions", response_model=dict[str, PageAccess])
async def get_role_page_permissions(role_id: int, ctx: AdminContext, db: Session):
    return await permission_service.get_role_page_permissions(db, role_id)


@router.post("/roles/{role_id}/grant", response_model=GrantResponse)
async def grant_role_permission(role_id: int, grant: GrantRequest, ctx: AdminContext, db: Session):
    return await permission_service.grant_role_permission(db, role_id, grant.permission_id, ctx.user_id)


@router.post("/roles/{role_id}/revoke", response_model=GrantResponse)
async def revoke_role_permission(role_id: int, grant: GrantRequest, ctx: AdminContext, db: Session):
    return await permission_service.revoke_role_permission(db, role_id, grant.permission_id)


@router.post("/roles/{role_id}/grant-page", response_model=PageGrantResponse)
async def grant_role_page_permission(role_id: int, grant: PageGrantRequest, ctx: AdminContext, db: Session):
    granted = await permission_service.grant_page_permission(
        db, page=grant.page, action=grant.action, role_id=role_id, granted_by=ctx.user_id
    )
    return PageGrantResponse(page=grant.page, action=grant.action, granted=granted)


@router.post("/roles/{role_id}/revoke-page", response_model=MessageResponse)
async def revoke_role_page_permission(role_id: int, grant: PageGrantRequest, ctx: AdminContext, db: Session):
    await permission_service.revoke_page_permission(db, page=grant.page, action=grant.action, role_id=role_id)
    return MessageResponse(message=f"Page permission {grant.page}:{grant.action} revoked")


@router.post("/roles/{role_id}/apply-preset", response_model=GrantedPermissions)
async def apply_preset_to_role(role_id: int, body: ApplyPresetRequest, ctx: AdminContext, db: Session):
    granted = await permission_service.apply_preset(db, body.preset_id, role_id=role_id, granted_by=ctx.user_id)
    return GrantedPermissions(granted=granted)


@router.post("/roles/{role_id}/copy-from-role", response_model=GrantedPermissions)
async def copy_permissions_from_role(
    role_id: int, body: CopyFromSourceRoleRequest, ctx: AdminContext, db: Session
):
    granted = await permission_service.copy_permissions(
        db, source_role_id=body.source_role_id, target_role_id=role_id, granted_by=ctx.user_id
    )
    return GrantedPermissions(granted=granted)


@router.get("/{permission_id}/users", response_model=list[SoldierResponse])
async def list_users_with_permission(permission_id: int, ctx: AdminContext, db: Session):
    return await permission_service.list_users_with_permission(db, permission_id)


@router.get("/{permission_id}", response_model=PermissionResponse)
async def get_permission(permission_id: int, ctx: ReadContext, db: Session):
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise NotFoundFailure("Permission")
    return permission
