from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.audit.context import RequestContext
from schooladmin.core.database import get_db
from schooladmin.core.errors import AuthenticationFailure, AuthorizationFailure
from schooladmin.models.audit_log import AuditResource
from schooladmin.schemas.api_key import APIKeyCreate, APIKeyCreatedResponse, APIKeyResponse
from schooladmin.schemas.common import MessageResponse
from schooladmin.security.gatekeeper import ROUTE_PERMISSION, Gate, get_gatekeeper
from schooladmin.services import api_keys as api_key_service

router = APIRouter()

KeyGate = Gate(permission=ROUTE_PERMISSION, audit_resource=AuditResource.API_KEY)


def _require_user(ctx: RequestContext) -> int:
    if ctx.user_id is None:
        raise AuthenticationFailure("This credential is not bound to a user")
    return ctx.user_id


async def _owner_filter(request: Request, ctx: RequestContext) -> Optional[int]:
    """Admins see every key; everyone else only their own."""
    user_id = _require_user(ctx)
    if await get_gatekeeper(request).resolver.is_admin(user_id):
        return None
    return user_id


@router.get("", response_model=list[APIKeyResponse])
async def list_own_api_keys(
    ctx: Annotated[RequestContext, Depends(KeyGate)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    return await api_key_service.list_api_keys(db, user_id=_require_user(ctx))


@router.get("/all", response_model=list[APIKeyResponse])
async def list_all_api_keys(
    ctx: Annotated[RequestContext, Depends(Gate(admin_only=True, audit_resource=AuditResource.API_KEY))],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    return await api_key_service.list_api_keys(db)


@router.get("/{api_key_id}", response_model=APIKeyResponse)
async def get_api_key(
    api_key_id: int,
    request: Request,
    ctx: Annotated[RequestContext, Depends(KeyGate)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    owner = await _owner_filter(request, ctx)
    api_key = await api_key_service.get_api_key(db, api_key_id)
    if owner is not None and api_key.user_id != owner:
        raise AuthorizationFailure("You can only view your own API keys")
    return api_key


@router.post("", response_model=APIKeyCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    key_in: APIKeyCreate,
    request: Request,
    ctx: Annotated[
        RequestContext,
        Depends(Gate(permission=ROUTE_PERMISSION, rate_limit="strict", audit_resource=AuditResource.API_KEY)),
    ],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Issue a new API key.

    The plaintext key is in this response only. Only admins may issue keys
    for another user, and keys are only issued to a signed-in user, never to
    another API key.
    """
    if ctx.api_key is not None:
        raise AuthorizationFailure("API keys cannot be used to create API keys")
    owner = _require_user(ctx)
    if key_in.user_id is not None and key_in.user_id != owner:
        if not await get_gatekeeper(request).resolver.is_admin(owner):
            raise AuthorizationFailure("Only admins can create API keys for other users")
        owner = key_in.user_id

    api_key, plaintext = await api_key_service.create_api_key(
        db,
        name=key_in.name,
        user_id=owner,
        expires_at=key_in.expires_at,
        permissions=key_in.permissions,
    )
    return APIKeyCreatedResponse(**APIKeyResponse.model_validate(api_key).model_dump(), key=plaintext)


@router.delete("/{api_key_id}", response_model=MessageResponse)
async def revoke_api_key(
    api_key_id: int,
    request: Request,
    ctx: Annotated[RequestContext, Depends(KeyGate)],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    owner = await _owner_filter(request, ctx)
    await api_key_service.revoke_api_key(db, api_key_id, user_id=owner)
    return MessageResponse(message="API key revoked")
