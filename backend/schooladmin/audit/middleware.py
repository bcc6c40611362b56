"""
Audit Middleware

Creates the request context for every HTTP request and, for API paths,
records one audit entry per request once the response has been sent. The
entry is handed to the writer as a background task so the response is never
delayed by audit storage.
"""
import json
import logging
import re
import time
from typing import Optional
from urllib.parse import parse_qsl
from uuid import uuid4

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from schooladmin.audit.audit_logger import AuditEntry, AuditLogWriter, sanitize_headers
from schooladmin.audit.context import (
    RequestContext,
    clear_request_context,
    set_request_context,
)
from schooladmin.core.rate_limit import get_client_ip
from schooladmin.models.audit_log import AuditAction, AuditResource, AuditStatus

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
SKIP_EXACT = {"/", "/health", "/ready", "/live"}
SKIP_PREFIXES = ("/static",)
AUDITED_PREFIXES = ("/api", "/soc", "/audit")
MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
MAX_CAPTURED_BODY = 64 * 1024
MAX_ERROR_MESSAGE = 500

# Ordered: the first matching fragment wins
RESOURCE_RULES: tuple[tuple[tuple[str, ...], AuditResource], ...] = (
    (("/soldiers",), AuditResource.SOLDIER),
    (("/departments",), AuditResource.DEPARTMENT),
    (("/roles",), AuditResource.ROLE),
    (("/rooms",), AuditResource.ROOM),
    (("/auth",), AuditResource.AUTH),
    (("/audit", "/soc"), AuditResource.AUDIT_LOG),
    (("/api-keys",), AuditResource.API_KEY),
    (("/cohorts",), AuditResource.COHORT),
    (("/student-exits",), AuditResource.STUDENT_EXIT),
    (("/students",), AuditResource.STUDENT),
    (("/permissions",), AuditResource.PERMISSION),
    (("/tracks", "/classes"), AuditResource.STUDENT),
    (("/docs",), AuditResource.SYSTEM),
)

_TRAILING_ID = re.compile(r"/\d+$")
_RESOURCE_ID = re.compile(r"/(\d+)(?:/|$)")


def should_audit(path: str) -> bool:
    if path in SKIP_EXACT or path.startswith(SKIP_PREFIXES):
        return False
    return path.startswith(AUDITED_PREFIXES)


def infer_action(method: str, path: str) -> AuditAction:
    method = method.upper()
    if method == "POST":
        if "/login" in path:
            return AuditAction.LOGIN
        if "/register" in path:
            return AuditAction.REGISTER
        return AuditAction.CREATE
    if method in ("PUT", "PATCH"):
        return AuditAction.UPDATE
    if method == "DELETE":
        return AuditAction.DELETE
    if method == "GET":
        return AuditAction.READ if _TRAILING_ID.search(path) else AuditAction.READ_LIST
    return AuditAction.READ


def infer_resource(path: str) -> AuditResource:
    # TODO: replace with explicit per-route resource tags once every router sets one
    for fragments, resource in RESOURCE_RULES:
        if any(fragment in path for fragment in fragments):
            return resource
    return AuditResource.SYSTEM


def extract_resource_id(path: str) -> Optional[str]:
    match = _RESOURCE_ID.search(path)
    return match.group(1) if match else None


def _parse_json(raw: bytes) -> Optional[object]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return None


def extract_error_message(raw: bytes) -> Optional[str]:
    body = _parse_json(raw)
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if value:
                text = value if isinstance(value, str) else json.dumps(value)
                return text[:MAX_ERROR_MESSAGE]
    if not raw:
        return None
    return raw.decode("utf-8", errors="replace")[:MAX_ERROR_MESSAGE]


class _Exchange:
    """Byte counts and bounded copies of the request and response bodies."""

    def __init__(self) -> None:
        self.request_size = 0
        self.response_size = 0
        self.status_code = 500
        self.request_body = bytearray()
        self.response_body = bytearray()

    @staticmethod
    def keep(buffer: bytearray, chunk: bytes) -> None:
        room = MAX_CAPTURED_BODY - len(buffer)
        if room > 0:
            buffer.extend(chunk[:room])


class AuditMiddleware:
    def __init__(self, app: ASGIApp):
        self.app = app

    @staticmethod
    def _writer(scope: Scope) -> Optional[AuditLogWriter]:
        app = scope.get("app")
        return getattr(getattr(app, "state", None), "audit_writer", None)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        context = RequestContext(
            correlation_id=request.headers.get(CORRELATION_HEADER) or str(uuid4()),
            method=request.method,
            path=request.url.path,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        scope.setdefault("state", {})["context"] = context
        set_request_context(context)

        audited = should_audit(context.path)
        exchange = _Exchange()
        started = time.perf_counter()

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.request":
                chunk = message.get("body", b"")
                exchange.request_size += len(chunk)
                exchange.keep(exchange.request_body, chunk)
            return message

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                exchange.status_code = message["status"]
                headers = MutableHeaders(raw=message["headers"])
                headers[CORRELATION_HEADER] = context.correlation_id
            elif message["type"] == "http.response.body":
                chunk = message.get("body", b"")
                exchange.response_size += len(chunk)
                exchange.keep(exchange.response_body, chunk)
            await send(message)
            if audited and message["type"] == "http.response.body" and not message.get("more_body", False):
                self._emit(scope, request, context, exchange, started)

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        except Exception:
            if audited:
                exchange.status_code = 500
                self._emit(scope, request, context, exchange, started)
            raise
        finally:
            clear_request_context()

    def _emit(
        self,
        scope: Scope,
        request: Request,
        context: RequestContext,
        exchange: _Exchange,
        started: float,
    ) -> None:
        writer = self._writer(scope)
        if writer is None:
            return
        try:
            writer.submit(self.build_entry(request, context, exchange, started))
        except Exception as e:
            logger.error(f"Failed to schedule audit entry for {context.path}: {e}")

    @staticmethod
    def build_entry(
        request: Request,
        context: RequestContext,
        exchange: _Exchange,
        started: float,
    ) -> AuditEntry:
        path = context.path
        failed = exchange.status_code >= 400
        api_key = context.api_key

        details = {
            "correlationId": context.correlation_id,
            "statusCode": exchange.status_code,
            "endpoint": path,
            "method": context.method,
            "authMethod": context.auth_method.value,
            "queryParams": dict(parse_qsl(request.url.query)),
            "headers": sanitize_headers(request.headers),
        }
        if context.method in MUTATING_METHODS:
            body = _parse_json(bytes(exchange.request_body))
            if body is not None:
                details["requestBody"] = body
        if api_key is not None:
            details.update(
                {"apiKeyId": api_key.api_key_id, "apiKeyName": api_key.name, "apiKeyUserId": api_key.user_id}
            )

        resource = context.audit_resource or infer_resource(path)
        return AuditEntry(
            action=infer_action(context.method, path),
            resource=resource,
            status=AuditStatus.FAILURE if failed else AuditStatus.SUCCESS,
            user_id=context.user_id,
            user_email=context.user_email or (context.user.email if context.user else None),
            api_key_id=api_key.api_key_id if api_key else None,
            resource_id=extract_resource_id(path),
            details=details,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            error_message=extract_error_message(bytes(exchange.response_body)) if failed else None,
            http_method=context.method,
            http_path=path,
            request_size=exchange.request_size,
            response_size=exchange.response_size,
            response_time=int((time.perf_counter() - started) * 1000),
        )
