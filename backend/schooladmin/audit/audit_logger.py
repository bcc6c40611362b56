"""
Audit Log Writer

Persists audit entries without ever failing the request that produced them:
- sanitizes headers and payloads before they reach storage
- bounds concurrent writes with an admission window and a FIFO overflow queue
- retries transient storage faults on a fresh storage handle
- auto-pins high-value events
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.audit.context import RequestContext
from schooladmin.core.database import StorageHandleProvider, utcnow
from schooladmin.core.retry import retry_storage_operation
from schooladmin.models.audit_log import AuditAction, AuditLog, AuditResource, AuditStatus, Priority
from schooladmin.services.logging import security_logger

logger = logging.getLogger(__name__)

MAX_CONCURRENT_WRITES = 10
REDACTED = "**REDACTED**"
HEADER_REDACTED = "[REDACTED]"

# Sensitive keys that should be redacted from audit details
SENSITIVE_KEYS = {
    "password",
    "newpassword",
    "new_password",
    "oldpassword",
    "old_password",
    "hashed_password",
    "token",
    "access_token",
    "refresh_token",
    "authorization",
    "secret",
    "apikey",
    "api_key",
    "key",
    "plaintext",
    "csrf_token",
    "csrftoken",
}

REDACTED_HEADERS = {"authorization", "x-api-key", "cookie", "x-csrf-token"}

WRITE_ACTIONS = {AuditAction.CREATE.value, AuditAction.UPDATE.value, AuditAction.DELETE.value}
API_KEY_SENSITIVE_RESOURCES = {
    AuditResource.SOLDIER.value,
    AuditResource.STUDENT.value,
    AuditResource.COHORT.value,
    AuditResource.PERMISSION.value,
}


def sanitize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return sanitize_payload(value)
    elif isinstance(value, list):
        return [sanitize_value(item) for item in value]
    elif isinstance(value, str) and len(value) > 1000:
        return f"{value[:100]}... [TRUNCATED {len(value)} chars]"
    else:
        return value


def sanitize_payload(payload: Any) -> Any:
    """Return a copy of ``payload`` with credential-like keys redacted."""
    if not isinstance(payload, dict):
        return sanitize_value(payload)

    sanitized = {}
    for key, value in payload.items():
        if value == HEADER_REDACTED:
            sanitized[key] = value
            continue
        if str(key).lower() in SENSITIVE_KEYS:
            sanitized[key] = REDACTED
            continue
        sanitized[key] = sanitize_value(value)
    return sanitized


def sanitize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {
        name: HEADER_REDACTED if name.lower() in REDACTED_HEADERS else value
        for name, value in headers.items()
    }


def _value(member: Any) -> Any:
    return member.value if hasattr(member, "value") else member


@dataclass
class AuditEntry:
    action: str
    resource: str
    status: str = AuditStatus.SUCCESS.value
    user_id: Optional[int] = None
    user_email: Optional[str] = None
    api_key_id: Optional[int] = None
    resource_id: Optional[str] = None
    details: Optional[dict] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error_message: Optional[str] = None
    http_method: Optional[str] = None
    http_path: Optional[str] = None
    request_size: Optional[int] = None
    response_size: Optional[int] = None
    response_time: Optional[int] = None
    priority: Optional[str] = None
    is_pinned: Optional[bool] = None
    pinned_by: Optional[int] = None

    def __post_init__(self) -> None:
        self.action = _value(self.action)
        self.resource = _value(self.resource)
        self.status = _value(self.status)
        self.priority = _value(self.priority)


def should_auto_pin(entry: AuditEntry) -> bool:
    """Business rules for entries that are always worth an analyst's attention."""
    if entry.resource == AuditResource.API_KEY.value and entry.action == AuditAction.CREATE.value:
        return True

    if entry.resource == AuditResource.STUDENT.value:
        if entry.action in WRITE_ACTIONS:
            return True
        if entry.action == AuditAction.READ_LIST.value and entry.api_key_id is not None:
            return True

    if entry.resource in (AuditResource.AUTH.value, AuditResource.SECURITY.value):
        if entry.action == AuditAction.AUTH_FAILED.value and entry.priority == Priority.CRITICAL.value:
            return True
        if entry.action == AuditAction.UNAUTHORIZED_ACCESS.value and entry.priority == Priority.HIGH.value:
            return True

    if (
        entry.api_key_id is not None
        and entry.resource in API_KEY_SENSITIVE_RESOURCES
        and entry.action in WRITE_ACTIONS
    ):
        return True

    return False


def build_audit_log(entry: AuditEntry) -> AuditLog:
    record = AuditLog(
        user_id=entry.user_id,
        user_email=entry.user_email,
        api_key_id=entry.api_key_id,
        action=entry.action,
        resource=entry.resource,
        resource_id=str(entry.resource_id) if entry.resource_id is not None else None,
        details=sanitize_payload(entry.details) if entry.details else None,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent[:500] if entry.user_agent else None,
        status=entry.status,
        error_message=entry.error_message[:500] if entry.error_message else None,
        http_method=entry.http_method,
        http_path=entry.http_path[:500] if entry.http_path else None,
        request_size=entry.request_size,
        response_size=entry.response_size,
        response_time=entry.response_time,
        priority=entry.priority,
        is_pinned=False,
    )

    # Auto-pin only applies to successful operations; manual pins otherwise
    if entry.status == AuditStatus.SUCCESS.value and should_auto_pin(entry):
        record.is_pinned = True
        record.pinned_at = utcnow()
        record.pinned_by = None
    elif entry.is_pinned:
        record.is_pinned = True
        record.pinned_at = utcnow()
        record.pinned_by = entry.pinned_by
    return record


class AuditLogWriter:
    """
    Bounded-concurrency audit sink.

    At most ``max_concurrent`` writes run at once. Further writes wait in a
    FIFO queue and are admitted one per freed slot. Counter and queue are
    only touched between await points on the event loop, so no lock is
    needed.
    """

    def __init__(
        self,
        storage: StorageHandleProvider,
        *,
        max_concurrent: int = MAX_CONCURRENT_WRITES,
        max_retries: int = 3,
        base_delay: float = 0.2,
    ):
        self.storage = storage
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.active = 0
        self._queue: Deque[tuple[AuditEntry, asyncio.Future]] = deque()
        self._tasks: set[asyncio.Task] = set()

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def _persist(self, entry: AuditEntry) -> None:
        async def write(db: AsyncSession) -> None:
            db.add(build_audit_log(entry))
            await db.commit()

        await retry_storage_operation(
            self.storage,
            write,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
        )

    async def _write(self, entry: AuditEntry) -> None:
        try:
            await self._persist(entry)
        except Exception as e:
            # Audit logging must never break the primary request
            security_logger.audit_write_dropped(
                entry.action,
                entry.resource,
                e,
                http_path=entry.http_path,
                user_id=entry.user_id,
            )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _drain_queue(self) -> None:
        while self.active < self.max_concurrent and self._queue:
            entry, future = self._queue.popleft()
            if future.cancelled():
                continue
            self.active += 1
            self._spawn(self._run_queued(entry, future))

    async def _run_queued(self, entry: AuditEntry, future: asyncio.Future) -> None:
        try:
            await self._write(entry)
            if not future.done():
                future.set_result(None)
        finally:
            self.active -= 1
            self._drain_queue()

    async def create_audit_log(self, entry: AuditEntry) -> None:
        """Persist ``entry``, waiting for a slot if the window is full. Never raises."""
        if self.active < self.max_concurrent and not self._queue:
            self.active += 1
            try:
                await self._write(entry)
            finally:
                self.active -= 1
                self._drain_queue()
            return

        future = asyncio.get_running_loop().create_future()
        self._queue.append((entry, future))
        self._drain_queue()
        await future

    def submit(self, entry: AuditEntry) -> asyncio.Task:
        """Fire-and-forget write; failures are logged by the writer."""
        task = self._spawn(self.create_audit_log(entry))
        task.add_done_callback(self._log_task_failure)
        return task

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Audit task failed: {exc.__class__.__name__}")

    async def drain(self) -> None:
        """Wait until every submitted and queued write has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def entry_from_context(
    context: RequestContext,
    *,
    action: AuditAction,
    resource: AuditResource,
    status: AuditStatus,
    priority: Optional[Priority] = None,
    details: Optional[dict] = None,
    error_message: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> AuditEntry:
    """Build an entry for a security event raised while handling ``context``."""
    api_key = context.api_key
    merged = {
        "correlationId": context.correlation_id,
        "endpoint": context.path,
        "method": context.method,
        "authMethod": context.auth_method.value,
    }
    if api_key is not None:
        merged.update(
            {"apiKeyId": api_key.api_key_id, "apiKeyName": api_key.name, "apiKeyUserId": api_key.user_id}
        )
    if details:
        merged.update(details)
    return AuditEntry(
        action=action,
        resource=resource,
        status=status,
        user_id=context.user_id,
        user_email=context.user_email or (context.user.email if context.user else None),
        api_key_id=api_key.api_key_id if api_key else None,
        resource_id=resource_id,
        details=merged,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        error_message=error_message,
        http_method=context.method,
        http_path=context.path,
        priority=priority,
    )
