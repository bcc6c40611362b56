import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.audit.context import RequestContext
from schooladmin.core.database import get_db, utcnow
from schooladmin.core.errors import AuthenticationFailure, ConflictFailure, NotFoundFailure
from schooladmin.core.security import create_access_token, get_password_hash, verify_password
from schooladmin.models.audit_log import AuditAction, AuditResource, AuditStatus, Priority
from schooladmin.models.user import Soldier
from schooladmin.schemas.auth import CsrfTokenResponse, LoginRequest, RegisterRequest, SoldierResponse, Token
from schooladmin.security.csrf import CSRF_COOKIE_NAME, generate_csrf_token
from schooladmin.security.gatekeeper import AuthMode, Gate, get_gatekeeper
from schooladmin.security.principals import UserIdentity

router = APIRouter()
logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid personal number or password"


@router.post("/login", response_model=Token)
async def login(
    credentials: LoginRequest,
    request: Request,
    ctx: Annotated[RequestContext, Depends(Gate(auth=AuthMode.NONE, rate_limit="login", audit_resource=AuditResource.AUTH))],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """
    Exchange a personal number and password for a JWT.

    Only failed attempts count against the login rate limit.
    """
    gatekeeper = get_gatekeeper(request)
    result = await db.execute(select(Soldier).where(Soldier.personal_number == credentials.personal_number))
    soldier = result.scalar_one_or_none()

    if soldier is None or not soldier.hashed_password or not verify_password(credentials.password, soldier.hashed_password):
        gatekeeper.record_failed_attempt(ctx)
        gatekeeper.audit(
            ctx,
            AuditAction.LOGIN_FAILED,
            AuditResource.AUTH,
            AuditStatus.FAILURE,
            priority=Priority.MEDIUM,
            details={"personalNumber": credentials.personal_number},
            error_message=INVALID_CREDENTIALS,
        )
        logger.warning(
            "Login failed",
            extra={"event": "login_failed", "ip_address": ctx.ip_address},
        )
        raise AuthenticationFailure(INVALID_CREDENTIALS)

    if not soldier.is_active:
        gatekeeper.record_failed_attempt(ctx)
        gatekeeper.audit(
            ctx,
            AuditAction.LOGIN_FAILED,
            AuditResource.AUTH,
            AuditStatus.FAILURE,
            priority=Priority.MEDIUM,
            details={"personalNumber": credentials.personal_number, "reason": "inactive"},
            error_message="Account is disabled",
        )
        raise AuthenticationFailure("Account is disabled")

    soldier.last_login_at = utcnow()
    await db.commit()

    ctx.principal = UserIdentity(user_id=soldier.id, email=soldier.email, personal_number=soldier.personal_number)
    ctx.user_email = soldier.email
    ctx.is_admin = soldier.is_admin
    gatekeeper.audit(ctx, AuditAction.LOGIN, AuditResource.AUTH, AuditStatus.SUCCESS, priority=Priority.LOW)
    logger.info(
        f"User logged in: {soldier.id}",
        extra={"event": "login_success", "user_id": str(soldier.id)},
    )

    token = create_access_token(
        soldier.id,
        email=soldier.email,
        personal_number=soldier.personal_number,
        settings=gatekeeper.settings,
    )
    return Token(access_token=token)


@router.post("/register", response_model=SoldierResponse, status_code=status.HTTP_201_CREATED)
async def register(
    user_in: RegisterRequest,
    request: Request,
    ctx: Annotated[RequestContext, Depends(Gate(auth=AuthMode.NONE, rate_limit="registration", audit_resource=AuditResource.AUTH))],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    conditions = [Soldier.personal_number == user_in.personal_number]
    if user_in.email:
        conditions.append(Soldier.email == user_in.email)
    result = await db.execute(select(Soldier.id).where(or_(*conditions)))
    if result.first() is not None:
        raise ConflictFailure("A user with this personal number or email already exists")

    soldier = Soldier(
        personal_number=user_in.personal_number,
        name=user_in.name,
        email=user_in.email,
        hashed_password=get_password_hash(user_in.password),
        is_admin=False,
        is_active=True,
    )
    db.add(soldier)
    await db.commit()
    await db.refresh(soldier)

    gatekeeper = get_gatekeeper(request)
    ctx.principal = UserIdentity(user_id=soldier.id, email=soldier.email, personal_number=soldier.personal_number)
    gatekeeper.audit(
        ctx,
        AuditAction.REGISTER,
        AuditResource.AUTH,
        AuditStatus.SUCCESS,
        priority=Priority.LOW,
    )
    logger.info(
        "User registered successfully",
        extra={"event": "user_registered", "user_id": str(soldier.id)},
    )
    return soldier


@router.get("/me", response_model=SoldierResponse)
async def me(
    ctx: Annotated[RequestContext, Depends(Gate())],
    db: Annotated[AsyncSession, Depends(get_db)],
):
    if ctx.user_id is None:
        raise AuthenticationFailure("This credential is not bound to a user")
    soldier = await db.get(Soldier, ctx.user_id)
    if soldier is None:
        raise NotFoundFailure("User")
    return soldier


@router.get("/csrf-token", response_model=CsrfTokenResponse)
async def csrf_token(
    response: Response,
    request: Request,
    ctx: Annotated[RequestContext, Depends(Gate(auth=AuthMode.OPTIONAL))],
):
    """Issue a double-submit token: the same value goes in the cookie and the body."""
    token = generate_csrf_token()
    settings = get_gatekeeper(request).settings
    response.set_cookie(
        CSRF_COOKIE_NAME,
        token,
        httponly=False,
        secure=settings.ENV == "production",
        samesite="strict",
    )
    return CsrfTokenResponse(csrf_token=token)
