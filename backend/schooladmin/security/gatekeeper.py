"""
Request gatekeeper.

Runs the security stages for a route in a fixed order:

    authenticate -> IP block check -> rate limit -> CSRF -> permission

Each stage may reject the request. Every rejection is audited before the
error is raised; the per-request audit entry written by the audit middleware
follows regardless of outcome.

Routes opt in with the ``Gate`` dependency::

    @router.get("/audit-logs")
    async def list_logs(ctx: Annotated[RequestContext, Depends(Gate(permission=ROUTE_PERMISSION))]):
        ...
"""
import logging
from enum import Enum
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials

from schooladmin.audit.audit_logger import AuditLogWriter, entry_from_context
from schooladmin.audit.context import RequestContext, context_from_request
from schooladmin.core.config import Settings
from schooladmin.core.errors import AuthenticationFailure, AuthorizationFailure, RateLimitFailure
from schooladmin.core.rate_limit import RATE_LIMITS, InMemoryRateLimiter, TrustTier
from schooladmin.core.security import api_key_scheme, bearer_scheme
from schooladmin.models.audit_log import AuditAction, AuditResource, AuditStatus, Priority
from schooladmin.permissions.resolver import PermissionResolver, derive_permission_from_request
from schooladmin.security.credentials import CredentialVerifier
from schooladmin.security.csrf import SAFE_METHODS, find_csrf_violation
from schooladmin.security.ip_blocking import IPBlockRegistry
from schooladmin.security.principals import AuthFailure, AuthFailureReason, AuthMethod, UserIdentity
from schooladmin.security.trust import TrustRegistry

logger = logging.getLogger(__name__)

# Permission mode: derive the requirement from the request's method and path
ROUTE_PERMISSION = "__route__"

_FAILURE_PRIORITY = {
    AuthFailureReason.MISSING: Priority.LOW,
    AuthFailureReason.INVALID_TOKEN: Priority.MEDIUM,
    AuthFailureReason.EXPIRED_TOKEN: Priority.LOW,
    AuthFailureReason.MALFORMED: Priority.HIGH,
    AuthFailureReason.NOT_FOUND: Priority.HIGH,
    AuthFailureReason.INACTIVE: Priority.HIGH,
    AuthFailureReason.EXPIRED: Priority.MEDIUM,
}

# Audit vocabulary for failure reasons whose name differs from the verifier's
_AUDIT_REASON = {
    AuthFailureReason.EXPIRED_TOKEN: AuditAction.TOKEN_EXPIRED.value,
}


class AuthMode(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    NONE = "none"


class Gatekeeper:
    def __init__(
        self,
        *,
        settings: Settings,
        verifier: CredentialVerifier,
        resolver: PermissionResolver,
        trust: TrustRegistry,
        ip_blocks: IPBlockRegistry,
        rate_limiter: InMemoryRateLimiter,
        audit_writer: AuditLogWriter,
    ):
        self.settings = settings
        self.verifier = verifier
        self.resolver = resolver
        self.trust = trust
        self.ip_blocks = ip_blocks
        self.rate_limiter = rate_limiter
        self.audit_writer = audit_writer

    def audit(
        self,
        context: RequestContext,
        action: AuditAction,
        resource: AuditResource,
        status: AuditStatus,
        *,
        priority: Optional[Priority] = None,
        details: Optional[dict] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self.audit_writer.submit(
            entry_from_context(
                context,
                action=action,
                resource=resource,
                status=status,
                priority=priority,
                details=details,
                error_message=error_message,
            )
        )

    async def authenticate(self, context: RequestContext, request: Request, mode: AuthMode) -> None:
        result = await self.verifier.authenticate(request.headers)

        if result is None:
            if mode == AuthMode.REQUIRED:
                self.audit(
                    context,
                    AuditAction.AUTH_FAILED,
                    AuditResource.AUTH,
                    AuditStatus.FAILURE,
                    priority=Priority.LOW,
                    details={"reason": AuthFailureReason.MISSING.value},
                    error_message="No credentials provided",
                )
                raise AuthenticationFailure("Authentication required")
            return

        if isinstance(result, AuthFailure):
            self.audit(
                context,
                AuditAction.AUTH_FAILED,
                AuditResource.AUTH,
                AuditStatus.FAILURE,
                priority=_FAILURE_PRIORITY.get(result.reason, Priority.MEDIUM),
                details={
                    "authType": result.method.value,
                    "reason": _AUDIT_REASON.get(result.reason, result.reason.value),
                },
                error_message=result.message,
            )
            if result.method == AuthMethod.API_KEY:
                raise AuthorizationFailure(result.message)
            raise AuthenticationFailure(result.message)

        context.principal = result
        if isinstance(result, UserIdentity):
            context.user_email = result.email
        self.audit(
            context,
            AuditAction.AUTH_SUCCESS,
            AuditResource.AUTH,
            AuditStatus.SUCCESS,
            priority=Priority.LOW,
            details={"authType": result.auth_method.value},
        )

    async def check_block(self, context: RequestContext) -> None:
        if await self.ip_blocks.is_ip_blocked(context.ip_address, context.user_id):
            self.audit(
                context,
                AuditAction.UNAUTHORIZED_ACCESS,
                AuditResource.SYSTEM,
                AuditStatus.FAILURE,
                priority=Priority.HIGH,
                details={"reason": "ip_blocked"},
                error_message="IP address is blocked",
            )
            raise AuthorizationFailure("Access denied: IP address is blocked")

    async def resolve_tier(self, context: RequestContext) -> TrustTier:
        user_id = context.user_id
        if user_id is not None and context.is_admin is None:
            try:
                context.is_admin = await self.resolver.is_admin(user_id)
            except Exception as e:
                # Only the elevated ceiling is lost; baseline limits still apply
                logger.warning(f"Admin lookup failed during rate limiting: {e.__class__.__name__}")
                context.is_admin = False
        if context.is_admin:
            return TrustTier.ADMIN
        if context.is_trusted is None:
            context.is_trusted = await self.trust.is_trusted_user(
                user_id=user_id,
                ip_address=context.ip_address,
                email=context.user_email,
            )
        return TrustTier.TRUSTED if context.is_trusted else TrustTier.BASELINE

    async def check_rate_limit(self, context: RequestContext, policy_name: str) -> None:
        policy = RATE_LIMITS[policy_name]
        tier = await self.resolve_tier(context)
        key = context.ip_address or "unknown"
        result = self.rate_limiter.check(policy, key, tier, record=not policy.count_failures_only)
        if not result.limited:
            return

        is_login = policy.name == "login"
        self.audit(
            context,
            AuditAction.RATE_LIMIT_EXCEEDED,
            AuditResource.AUTH if is_login else AuditResource.SYSTEM,
            AuditStatus.FAILURE,
            priority=Priority.HIGH if is_login else Priority.MEDIUM,
            details={"policy": policy.name, "tier": tier.value, "limit": result.limit},
            error_message=policy.message,
        )
        raise RateLimitFailure(policy.message, retry_after=result.retry_after, limit=result.limit)

    def record_failed_attempt(self, context: RequestContext, policy_name: str = "login") -> None:
        """Count an attempt for policies that only track failures."""
        policy = RATE_LIMITS[policy_name]
        self.rate_limiter.record(policy, context.ip_address or "unknown")

    def check_csrf(self, context: RequestContext, request: Request) -> None:
        if context.method.upper() in SAFE_METHODS or context.auth_method == AuthMethod.API_KEY:
            return
        reason = find_csrf_violation(request, context.method, self.settings.allowed_origin)
        if reason is None:
            return
        self.audit(
            context,
            AuditAction.CSRF_ATTEMPT,
            AuditResource.SECURITY,
            AuditStatus.FAILURE,
            priority=Priority.HIGH,
            details={
                "reason": reason,
                "origin": request.headers.get("origin"),
                "referer": request.headers.get("referer"),
            },
            error_message="CSRF validation failed",
        )
        raise AuthorizationFailure("CSRF validation failed")

    async def _permission_granted(self, context: RequestContext, permission: str) -> tuple[bool, Optional[str]]:
        if permission == ROUTE_PERMISSION:
            required = derive_permission_from_request(context.method, context.path)
        else:
            required = permission

        api_key = context.api_key
        if api_key is not None and api_key.permissions is not None:
            granted = "*" in api_key.permissions or (required is not None and required in api_key.permissions)
            return granted, required

        if permission == ROUTE_PERMISSION:
            return await self.resolver.has_api_permission(context.user_id, context.method, context.path), required
        return await self.resolver.has_scoped_permission(context.user_id, permission), required

    async def check_permission(
        self,
        context: RequestContext,
        permission: Optional[str],
        admin_only: bool,
    ) -> None:
        if admin_only:
            user_id = context.user_id
            api_key = context.api_key
            # A key with its own permission list never inherits its owner's admin status
            restricted = api_key is not None and api_key.permissions is not None and "*" not in api_key.permissions
            if restricted or user_id is None or not await self.resolver.is_admin(user_id):
                self.audit(
                    context,
                    AuditAction.UNAUTHORIZED_ACCESS,
                    AuditResource.SYSTEM,
                    AuditStatus.FAILURE,
                    priority=Priority.HIGH,
                    details={"reason": "admin_required"},
                    error_message="Admin access required",
                )
                raise AuthorizationFailure("Admin access required")
            context.is_admin = True
            self.audit(context, AuditAction.ADMIN_ACCESS, AuditResource.SYSTEM, AuditStatus.SUCCESS)
            return

        if permission is None:
            return

        granted, required = await self._permission_granted(context, permission)
        if granted:
            return
        self.audit(
            context,
            AuditAction.UNAUTHORIZED_ACCESS,
            AuditResource.PERMISSION,
            AuditStatus.FAILURE,
            priority=Priority.HIGH,
            details={"requiredPermission": required},
            error_message="Insufficient permissions",
        )
        raise AuthorizationFailure("Insufficient permissions", details={"requiredPermission": required})

    async def run(self, request: Request, gate: "Gate") -> RequestContext:
        context = context_from_request(request)
        if not context.method:
            context.method = request.method
            context.path = request.url.path
        if gate.audit_resource is not None:
            context.audit_resource = gate.audit_resource.value

        if gate.auth != AuthMode.NONE:
            await self.authenticate(context, request, gate.auth)
        await self.check_block(context)
        if gate.rate_limit is not None:
            await self.check_rate_limit(context, gate.rate_limit)
        self.check_csrf(context, request)
        await self.check_permission(context, gate.permission, gate.admin_only)
        return context


class Gate:
    """FastAPI dependency running the gatekeeper stages configured for a route."""

    def __init__(
        self,
        *,
        auth: AuthMode = AuthMode.REQUIRED,
        rate_limit: Optional[str] = "api",
        permission: Optional[str] = None,
        admin_only: bool = False,
        audit_resource: Optional[AuditResource] = None,
    ):
        if rate_limit is not None and rate_limit not in RATE_LIMITS:
            raise ValueError(f"Unknown rate limit policy: {rate_limit}")
        self.auth = auth
        self.rate_limit = rate_limit
        self.permission = permission
        self.admin_only = admin_only
        self.audit_resource = audit_resource

    async def __call__(
        self,
        request: Request,
        _bearer: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
        _api_key: Optional[str] = Depends(api_key_scheme),
    ) -> RequestContext:
        gatekeeper: Gatekeeper = request.app.state.gatekeeper
        return await gatekeeper.run(request, self)


def get_gatekeeper(request: Request) -> Gatekeeper:
    return request.app.state.gatekeeper
