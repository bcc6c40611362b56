"""
Tests for the audit log writer and the audit middleware helpers.

Covers:
- Sanitization of sensitive fields and headers
- Auto-pin rules and manual pins
- Bounded concurrency, FIFO admission and failure resilience
- Action/resource inference from the request path
"""
import asyncio
from dataclasses import fields
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from schooladmin.audit.audit_logger import (
    HEADER_REDACTED,
    REDACTED,
    AuditEntry,
    AuditLogWriter,
    build_audit_log,
    sanitize_headers,
    sanitize_payload,
    should_auto_pin,
)
from schooladmin.audit.context import RequestContext
from schooladmin.audit.audit_logger import entry_from_context
from schooladmin.audit.middleware import extract_error_message, extract_resource_id, infer_action, infer_resource, should_audit
from schooladmin.models.audit_log import AuditAction, AuditLog, AuditResource, AuditStatus, Priority
from schooladmin.security.principals import APIKeyIdentity


class TestSanitization:
    def test_password_fields_redacted(self):
        payload = {
            "personalNumber": "1234",
            "password": "secret123",
            "nested": {"token": "abc", "apiKey": "sk_x", "keep": 1},
            "items": [{"access_token": "t"}],
        }

        sanitized = sanitize_payload(payload)

        assert sanitized["personalNumber"] == "1234"
        assert sanitized["password"] == REDACTED
        assert sanitized["nested"] == {"token": REDACTED, "apiKey": REDACTED, "keep": 1}
        assert sanitized["items"] == [{"access_token": REDACTED}]
        assert payload["password"] == "secret123"

    def test_long_strings_truncated(self):
        sanitized = sanitize_payload({"notes": "x" * 5000})
        assert sanitized["notes"].endswith("[TRUNCATED 5000 chars]")

    def test_headers_redacted(self):
        headers = sanitize_headers({"Authorization": "Bearer t", "X-API-Key": "sk_1", "Accept": "*/*"})
        assert headers == {"Authorization": HEADER_REDACTED, "X-API-Key": HEADER_REDACTED, "Accept": "*/*"}
        assert sanitize_payload({"headers": headers})["headers"]["Authorization"] == HEADER_REDACTED


class TestAutoPin:
    def test_api_key_creation_pinned_by_system(self):
        record = build_audit_log(AuditEntry(action=AuditAction.CREATE, resource=AuditResource.API_KEY))
        assert record.is_pinned is True
        assert record.pinned_by is None
        assert record.pinned_at is not None

    def test_failed_operations_never_auto_pinned(self):
        record = build_audit_log(
            AuditEntry(action=AuditAction.CREATE, resource=AuditResource.API_KEY, status=AuditStatus.FAILURE)
        )
        assert record.is_pinned is False

    def test_student_rules(self):
        assert should_auto_pin(AuditEntry(action=AuditAction.UPDATE, resource=AuditResource.STUDENT))
        assert not should_auto_pin(AuditEntry(action=AuditAction.READ_LIST, resource=AuditResource.STUDENT))
        assert should_auto_pin(
            AuditEntry(action=AuditAction.READ_LIST, resource=AuditResource.STUDENT, api_key_id=3)
        )

    def test_api_key_writes_on_sensitive_resources(self):
        assert should_auto_pin(AuditEntry(action=AuditAction.DELETE, resource=AuditResource.SOLDIER, api_key_id=1))
        assert not should_auto_pin(AuditEntry(action=AuditAction.DELETE, resource=AuditResource.SOLDIER))
        assert not should_auto_pin(AuditEntry(action=AuditAction.READ, resource=AuditResource.COHORT, api_key_id=1))

    def test_security_event_rules(self):
        assert should_auto_pin(
            AuditEntry(action=AuditAction.AUTH_FAILED, resource=AuditResource.AUTH, priority=Priority.CRITICAL)
        )
        assert should_auto_pin(
            AuditEntry(
                action=AuditAction.UNAUTHORIZED_ACCESS, resource=AuditResource.SECURITY, priority=Priority.HIGH
            )
        )
        assert not should_auto_pin(
            AuditEntry(action=AuditAction.AUTH_FAILED, resource=AuditResource.AUTH, priority=Priority.MEDIUM)
        )

    def test_manual_pin_honored_when_no_rule_applies(self):
        record = build_audit_log(
            AuditEntry(action=AuditAction.READ, resource=AuditResource.SYSTEM, is_pinned=True, pinned_by=7)
        )
        assert record.is_pinned is True
        assert record.pinned_by == 7

    def test_auto_pin_wins_over_manual_actor(self):
        record = build_audit_log(
            AuditEntry(action=AuditAction.CREATE, resource=AuditResource.API_KEY, is_pinned=True, pinned_by=7)
        )
        assert record.pinned_by is None


class TestEntryFromContext:
    def test_api_key_fields_copied(self):
        context = RequestContext(
            correlation_id="c-1",
            method="POST",
            path="/api/students",
            ip_address="10.0.0.1",
            principal=APIKeyIdentity(api_key_id=4, name="etl", user_id=9),
        )

        entry = entry_from_context(
            context, action=AuditAction.CREATE, resource=AuditResource.STUDENT, status=AuditStatus.SUCCESS
        )

        assert entry.user_id == 9
        assert entry.api_key_id == 4
        assert entry.details["apiKeyName"] == "etl"
        assert entry.details["authMethod"] == "API_KEY"
        assert entry.details["correlationId"] == "c-1"

    def test_empty_context_carries_only_request_facts(self):
        context = RequestContext.create_empty()

        assert context.correlation_id
        assert context.principal is None
        assert context.auth_method.value == "UNAUTHENTICATED"
        assert {f.name for f in fields(RequestContext)} == {
            "correlation_id",
            "method",
            "path",
            "ip_address",
            "user_agent",
            "principal",
            "user_email",
            "is_admin",
            "is_trusted",
            "audit_resource",
        }


def _entry(index: int) -> AuditEntry:
    return AuditEntry(
        action=AuditAction.READ,
        resource=AuditResource.SYSTEM,
        http_path=f"/api/item/{index}",
        details={"index": index},
    )


@pytest.mark.asyncio
class TestAuditLogWriter:
    async def test_all_entries_persisted_beyond_ceiling(self, storage):
        writer = AuditLogWriter(storage, max_concurrent=10)

        for index in range(25):
            writer.submit(_entry(index))
        await writer.drain()

        async with storage.session() as db:
            count = (await db.execute(select(func.count(AuditLog.id)))).scalar_one()
        assert count == 25
        assert writer.active == 0
        assert writer.queued == 0

    async def test_concurrency_never_exceeds_ceiling_and_queue_is_fifo(self, storage):
        writer = AuditLogWriter(storage, max_concurrent=3)
        running = 0
        peak = 0
        started: list[int] = []

        async def slow_persist(entry: AuditEntry) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            started.append(entry.details["index"])
            await asyncio.sleep(0.01)
            running -= 1

        with patch.object(writer, "_persist", side_effect=slow_persist):
            for index in range(20):
                writer.submit(_entry(index))
            await asyncio.sleep(0)
            assert writer.active <= 3
            await writer.drain()

        assert peak == 3
        assert sorted(started) == list(range(20))
        assert started[3:] == sorted(started[3:])

    async def test_write_failure_is_swallowed_and_reported(self, storage):
        writer = AuditLogWriter(storage)

        with patch.object(writer, "_persist", side_effect=RuntimeError("disk full")), patch(
            "schooladmin.audit.audit_logger.security_logger"
        ) as security_logger:
            await writer.create_audit_log(_entry(1))

        security_logger.audit_write_dropped.assert_called_once()
        args = security_logger.audit_write_dropped.call_args.args
        assert args[0] == "READ"
        assert args[1] == "SYSTEM"
        assert writer.active == 0

    async def test_queued_writers_released_after_failures(self, storage):
        writer = AuditLogWriter(storage, max_concurrent=1)

        with patch.object(writer, "_persist", side_effect=RuntimeError("boom")), patch(
            "schooladmin.audit.audit_logger.security_logger"
        ):
            await asyncio.gather(*(writer.create_audit_log(_entry(i)) for i in range(5)))

        assert writer.active == 0
        assert writer.queued == 0


class TestMiddlewareHelpers:
    def test_should_audit(self):
        assert should_audit("/api/students")
        assert should_audit("/soc/audit-logs")
        assert not should_audit("/health")
        assert not should_audit("/ready")
        assert not should_audit("/static/app.js")
        assert not should_audit("/favicon.ico")

    def test_infer_action(self):
        assert infer_action("POST", "/api/auth/login") == AuditAction.LOGIN
        assert infer_action("POST", "/api/auth/register") == AuditAction.REGISTER
        assert infer_action("POST", "/api/students") == AuditAction.CREATE
        assert infer_action("PATCH", "/api/students/4") == AuditAction.UPDATE
        assert infer_action("DELETE", "/api/students/4") == AuditAction.DELETE
        assert infer_action("GET", "/api/students/4") == AuditAction.READ
        assert infer_action("GET", "/api/students") == AuditAction.READ_LIST

    def test_infer_resource_first_match_wins(self):
        assert infer_resource("/api/soldiers/1") == AuditResource.SOLDIER
        assert infer_resource("/api/roles/1/permissions") == AuditResource.ROLE
        assert infer_resource("/api/soc/audit-logs") == AuditResource.AUDIT_LOG
        assert infer_resource("/api/api-keys") == AuditResource.API_KEY
        assert infer_resource("/api/student-exits") == AuditResource.STUDENT_EXIT
        assert infer_resource("/api/students/3") == AuditResource.STUDENT
        assert infer_resource("/api/permissions") == AuditResource.PERMISSION
        assert infer_resource("/api/classes/2") == AuditResource.STUDENT
        assert infer_resource("/api/unknown") == AuditResource.SYSTEM

    def test_extract_resource_id(self):
        assert extract_resource_id("/api/students/42") == "42"
        assert extract_resource_id("/api/students/42/exits") == "42"
        assert extract_resource_id("/api/students") is None

    def test_extract_error_message(self):
        assert extract_error_message(b'{"error": "Forbidden"}') == "Forbidden"
        assert extract_error_message(b"plain failure") == "plain failure"
        assert extract_error_message(b"") is None


@pytest.mark.asyncio
class TestAuditMiddleware:
    async def test_request_entry_recorded(self, async_client, auth_headers, test_user, audit_logs):
        response = await async_client.get("/api/auth/me?verbose=1", headers=auth_headers)
        assert response.status_code == 200

        entries = await audit_logs(action="READ_LIST", resource="AUTH")
        assert len(entries) == 1
        entry = entries[0]
        assert entry.user_id == test_user.id
        assert entry.status == "SUCCESS"
        assert entry.http_method == "GET"
        assert entry.http_path == "/api/auth/me"
        assert entry.details["statusCode"] == 200
        assert entry.details["queryParams"] == {"verbose": "1"}
        assert entry.details["headers"]["authorization"] == HEADER_REDACTED
        assert entry.details["correlationId"] == response.headers["X-Correlation-ID"]
        assert entry.response_size == len(response.content)

    async def test_failed_request_records_error(self, async_client, audit_logs):
        await async_client.post("/api/auth/login", json={"personalNumber": "1", "password": "hunter22"})

        entries = await audit_logs(action="LOGIN", resource="AUTH")
        assert len(entries) == 1
        assert entries[0].status == "FAILURE"
        assert entries[0].error_message == "Invalid personal number or password"
        assert entries[0].details["requestBody"]["password"] == REDACTED

    async def test_health_not_audited(self, async_client, audit_logs):
        assert (await async_client.get("/health")).status_code == 200
        assert await audit_logs() == []
