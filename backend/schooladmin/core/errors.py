"""
Error taxonomy and JSON error handlers.

Every classified failure is rendered as ``{"error", "correlationId", "details"?}``.
Unclassified faults become a generic 500; the message and stack are only
exposed when ``Settings.debug_exposed`` is true.
"""
import logging
import traceback
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from schooladmin.audit.context import get_correlation_id
from schooladmin.core.database import is_transient_storage_fault

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for classified failures."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        details: Any = None,
        status_code: Optional[int] = None,
        headers: Optional[dict[str, str]] = None,
    ):
        self.message = message
        self.details = details
        self.headers = headers
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def payload(self) -> dict:
        body: dict[str, Any] = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationFailure(AppError):
    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationFailure(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Authentication required", **kwargs: Any):
        super().__init__(message, **kwargs)


class AuthorizationFailure(AppError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Forbidden", **kwargs: Any):
        super().__init__(message, **kwargs)


class NotFoundFailure(AppError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str = "Resource", **kwargs: Any):
        self.resource = resource
        super().__init__(f"{resource} not found", **kwargs)


class ConflictFailure(AppError):
    status_code = status.HTTP_409_CONFLICT


class RateLimitFailure(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, *, retry_after: int, limit: int, **kwargs: Any):
        self.retry_after = retry_after
        headers = {
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
        }
        super().__init__(message, headers=headers, **kwargs)

    def payload(self) -> dict:
        body = super().payload()
        body["retryAfter"] = self.retry_after
        return body


class StorageUnavailable(AppError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Database temporarily unavailable. Please try again.", **kwargs: Any):
        super().__init__(message, **kwargs)

    def payload(self) -> dict:
        body = super().payload()
        body["retryAfter"] = 5
        return body


def _render(request: Request, status_code: int, body: dict, headers: Optional[dict] = None) -> JSONResponse:
    body["correlationId"] = get_correlation_id(request)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI, *, debug_exposed: bool = False) -> None:
    """Attach JSON handlers for the error taxonomy to ``app``."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}")
        return _render(request, exc.status_code, exc.payload(), exc.headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return _render(request, status.HTTP_400_BAD_REQUEST, {"error": "Validation failed", "details": details})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _render(request, exc.status_code, {"error": exc.detail}, getattr(exc, "headers", None))

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError):
        message = str(exc.orig).lower() if exc.orig is not None else ""
        if "foreign key" in message:
            error = "Operation violates a reference to a related record"
        else:
            error = "A record with this value already exists"
        logger.info(f"Integrity error mapped to 409: {exc.orig.__class__.__name__}")
        return _render(request, status.HTTP_409_CONFLICT, {"error": error})

    async def storage_fault_handler(request: Request, exc: Exception):
        logger.error(f"Storage unavailable after retries: {exc.__class__.__name__}")
        return _render(request, status.HTTP_503_SERVICE_UNAVAILABLE, StorageUnavailable().payload())

    app.add_exception_handler(OperationalError, storage_fault_handler)
    app.add_exception_handler(InterfaceError, storage_fault_handler)

    # Last resort for faults raised by the middleware themselves; route errors
    # are rendered by UnhandledErrorMiddleware inside the stack
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        return unhandled_error_response(request, exc, debug_exposed)


def unhandled_error_response(request: Request, exc: Exception, debug_exposed: bool) -> JSONResponse:
    if is_transient_storage_fault(exc):
        logger.error(f"Storage unavailable after retries: {exc.__class__.__name__}")
        return _render(request, status.HTTP_503_SERVICE_UNAVAILABLE, StorageUnavailable().payload())

    logger.exception(f"Unhandled exception: {exc}")
    body: dict[str, Any] = {"error": "Internal server error"}
    if debug_exposed:
        body["message"] = str(exc)
        body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return _render(request, status.HTTP_500_INTERNAL_SERVER_ERROR, body)


class UnhandledErrorMiddleware:
    """
    Render unclassified exceptions as the generic JSON error.

    Installed inside the audit and CORS middleware so the error response gets
    the correlation header, CORS headers and an audit entry like any other.
    Exceptions raised after the response has started are re-raised.
    """

    def __init__(self, app: ASGIApp, debug_exposed: bool = False):
        self.app = app
        self.debug_exposed = debug_exposed

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            if response_started:
                raise
            response = unhandled_error_response(Request(scope), exc, self.debug_exposed)
            await response(scope, receive, send)
