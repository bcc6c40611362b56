"""
Request Context Module

A typed per-request context, created by the audit middleware and enriched by
the gatekeeper as the request passes each stage. It lives in a ContextVar for
code that has no access to the request, and on ``request.state.context`` for
code that does.
"""
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from starlette.requests import HTTPConnection

from schooladmin.security.principals import APIKeyIdentity, AuthMethod, Principal, UserIdentity


@dataclass
class RequestContext:
    correlation_id: str
    method: str = ""
    path: str = ""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    principal: Optional[Principal] = None
    user_email: Optional[str] = None
    is_admin: Optional[bool] = None
    is_trusted: Optional[bool] = None
    # Explicit audit resource tag set by a route; overrides path inference
    audit_resource: Optional[str] = None

    @classmethod
    def create_empty(cls) -> "RequestContext":
        """Context for work that does not originate from an HTTP request."""
        return cls(correlation_id=str(uuid4()))

    @property
    def auth_method(self) -> AuthMethod:
        if self.principal is None:
            return AuthMethod.UNAUTHENTICATED
        return self.principal.auth_method

    @property
    def user_id(self) -> Optional[int]:
        if self.principal is None:
            return None
        return self.principal.effective_user_id

    @property
    def api_key(self) -> Optional[APIKeyIdentity]:
        if isinstance(self.principal, APIKeyIdentity):
            return self.principal
        return None

    @property
    def user(self) -> Optional[UserIdentity]:
        if isinstance(self.principal, UserIdentity):
            return self.principal
        return None


request_context_var: ContextVar[Optional[RequestContext]] = ContextVar(
    "request_context",
    default=None,
)


def get_request_context() -> Optional[RequestContext]:
    return request_context_var.get()


def set_request_context(context: RequestContext) -> None:
    request_context_var.set(context)


def clear_request_context() -> None:
    request_context_var.set(None)


def context_from_request(request: HTTPConnection) -> RequestContext:
    """Return the context attached to ``request``, creating one if missing."""
    context = getattr(request.state, "context", None)
    if context is None:
        context = get_request_context() or RequestContext.create_empty()
        request.state.context = context
    return context


def get_correlation_id(request: HTTPConnection) -> str:
    return context_from_request(request).correlation_id
