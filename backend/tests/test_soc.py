"""
Tests for the SOC service and endpoints.

Covers:
- Audit log filtering and paging
- Statistics and 24-hour alerts
- Incident workflow transitions
- Pinning, user activity and resource history
"""
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from schooladmin.core.database import utcnow
from schooladmin.core.errors import NotFoundFailure, ValidationFailure
from schooladmin.models.audit_log import AuditLog, IncidentStatus, Priority
from schooladmin.schemas.soc import AuditLogFilter
from schooladmin.services import soc as soc_service


async def add_log(db: AsyncSession, **fields) -> AuditLog:
    values = {"action": "READ", "resource": "SYSTEM", "status": "SUCCESS"}
    values.update(fields)
    log = AuditLog(**values)
    db.add(log)
    await db.commit()
    await db.refresh(log)
    return log


@pytest.mark.asyncio
class TestAuditLogQueries:
    async def test_filters_and_paging(self, db_session: AsyncSession):
        await add_log(db_session, action="LOGIN", user_id=1, user_email="Alice@School.example", ip_address="10.0.0.1")
        await add_log(db_session, action="LOGIN_FAILED", status="FAILURE", user_id=2, ip_address="10.0.0.2")
        await add_log(db_session, action="CREATE", resource="STUDENT", resource_id="7", user_id=1)

        result = await soc_service.get_audit_logs(db_session, AuditLogFilter(user_id=1))
        assert result["total"] == 2
        assert [log.action for log in result["logs"]] == ["CREATE", "LOGIN"]

        by_email = await soc_service.get_audit_logs(db_session, AuditLogFilter(user_email="alice"))
        assert by_email["total"] == 1

        multi = await soc_service.get_audit_logs(db_session, AuditLogFilter(action=["LOGIN", "LOGIN_FAILED"]))
        assert multi["total"] == 2

        by_ip = await soc_service.get_audit_logs(db_session, AuditLogFilter(ip_address="10.0.0"))
        assert by_ip["total"] == 2

        paged = await soc_service.get_audit_logs(db_session, AuditLogFilter(limit=1, offset=1))
        assert paged["total"] == 3
        assert len(paged["logs"]) == 1
        assert paged["logs"][0].action == "LOGIN_FAILED"

    async def test_date_range(self, db_session: AsyncSession):
        now = utcnow()
        await add_log(db_session, created_at=now - timedelta(days=10))
        await add_log(db_session, created_at=now - timedelta(hours=1))

        result = await soc_service.get_audit_logs(db_session, AuditLogFilter(start_date=now - timedelta(days=1)))

        assert result["total"] == 1

    async def test_invalid_paging_rejected(self, db_session: AsyncSession):
        with pytest.raises(ValidationFailure):
            await soc_service.get_audit_logs(db_session, AuditLogFilter(limit=0))

    async def test_stats(self, db_session: AsyncSession):
        await add_log(db_session, action="LOGIN", user_id=1)
        await add_log(db_session, action="AUTH_FAILED", status="FAILURE", priority="LOW")
        await add_log(db_session, action="UNAUTHORIZED_ACCESS", status="FAILURE", user_id=2, incident_status="NEW")
        await add_log(db_session, action="LOGIN", user_id=1, created_at=utcnow() - timedelta(days=3), status="FAILURE")

        stats = await soc_service.get_audit_stats(db_session)

        assert stats["totalLogs"] == 4
        assert stats["byAction"] == {"LOGIN": 2, "AUTH_FAILED": 1, "UNAUTHORIZED_ACCESS": 1}
        assert stats["byStatus"] == {"SUCCESS": 1, "FAILURE": 3}
        assert stats["uniqueUsers"] == 2
        assert stats["recentFailures"] == 2
        assert stats["recentUnauthorizedAttempts"] == 2
        assert stats["openIncidents"] == 1
        assert stats["unassignedIncidents"] == 1

    async def test_alerts_cover_last_day_only(self, db_session: AsyncSession):
        await add_log(db_session, action="LOGIN_FAILED", status="FAILURE")
        await add_log(db_session, action="CREATE", status="FAILURE")
        await add_log(db_session, action="READ")
        await add_log(db_session, action="AUTH_FAILED", created_at=utcnow() - timedelta(days=2))

        alerts = await soc_service.get_security_alerts(db_session)

        assert sorted(log.action for log in alerts) == ["CREATE", "LOGIN_FAILED"]


@pytest.mark.asyncio
class TestIncidentWorkflow:
    async def test_mark_investigate_resolve(self, db_session: AsyncSession, admin_user):
        log = await add_log(db_session, action="UNAUTHORIZED_ACCESS", status="FAILURE")

        marked = await soc_service.mark_as_incident(db_session, log.id, Priority.HIGH, assigned_to=admin_user.id)
        assert marked.incident_status == "NEW"
        assert marked.priority == "HIGH"
        assert [i.id for i in await soc_service.get_open_incidents(db_session)] == [log.id]

        investigating = await soc_service.update_incident(
            db_session, log.id, incident_status=IncidentStatus.INVESTIGATING, analyst_notes="looking"
        )
        assert investigating.resolved_at is None

        resolved = await soc_service.update_incident(
            db_session, log.id, incident_status=IncidentStatus.RESOLVED, resolved_by=admin_user.id
        )
        assert resolved.incident_status == "RESOLVED"
        assert resolved.resolved_at is not None
        assert resolved.resolved_by == admin_user.id
        assert await soc_service.get_open_incidents(db_session) == []

    async def test_invalid_transition(self, db_session: AsyncSession):
        log = await add_log(db_session, incident_status="RESOLVED")
        with pytest.raises(ValidationFailure):
            await soc_service.update_incident(db_session, log.id, incident_status=IncidentStatus.ESCALATED)

    async def test_reopen_resolved(self, db_session: AsyncSession):
        log = await add_log(db_session, incident_status="FALSE_POSITIVE")
        reopened = await soc_service.update_incident(
            db_session, log.id, incident_status=IncidentStatus.INVESTIGATING
        )
        assert reopened.incident_status == "INVESTIGATING"

    async def test_status_change_requires_incident(self, db_session: AsyncSession):
        log = await add_log(db_session)
        with pytest.raises(ValidationFailure):
            await soc_service.update_incident(db_session, log.id, incident_status=IncidentStatus.RESOLVED)

    async def test_unknown_log(self, db_session: AsyncSession):
        with pytest.raises(NotFoundFailure):
            await soc_service.mark_as_incident(db_session, 424242, Priority.LOW)


@pytest.mark.asyncio
class TestPinningAndHistory:
    async def test_pin_and_unpin(self, db_session: AsyncSession):
        log = await add_log(db_session)

        pinned = await soc_service.pin_log(db_session, log.id, pinned_by=5)
        assert pinned.is_pinned and pinned.pinned_by == 5 and pinned.pinned_at is not None

        unpinned = await soc_service.unpin_log(db_session, log.id)
        assert not unpinned.is_pinned and unpinned.pinned_by is None

    async def test_user_activity(self, db_session: AsyncSession):
        await add_log(db_session, user_id=3, action="LOGIN")
        await add_log(db_session, user_id=3, action="CREATE", status="FAILURE")
        await add_log(db_session, user_id=3, action="READ", created_at=utcnow() - timedelta(days=40))
        await add_log(db_session, user_id=4, action="READ")

        activity = await soc_service.get_user_activity(db_session, 3, days=30)

        assert activity["totalActions"] == 2
        assert activity["failures"] == 1
        assert activity["byAction"] == {"LOGIN": 1, "CREATE": 1}
        assert len(activity["recentLogs"]) == 2

    async def test_resource_history(self, db_session: AsyncSession):
        await add_log(db_session, resource="STUDENT", resource_id="12", action="CREATE")
        await add_log(db_session, resource="STUDENT", resource_id="12", action="UPDATE")
        await add_log(db_session, resource="STUDENT", resource_id="13", action="UPDATE")

        history = await soc_service.get_resource_history(db_session, "STUDENT", "12")

        assert [log.action for log in history] == ["UPDATE", "CREATE"]


@pytest.mark.asyncio
class TestSocEndpoints:
    async def test_audit_logs_endpoint_camel_case(self, async_client, admin_headers, db_session: AsyncSession):
        await add_log(db_session, action="LOGIN_FAILED", status="FAILURE", ip_address="10.2.2.2")

        response = await async_client.get(
            "/api/soc/audit-logs",
            params={"action": "LOGIN_FAILED,CSRF_ATTEMPT", "ipAddress": "10.2.2"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["limit"] == 100
        assert body["logs"][0]["ipAddress"] == "10.2.2.2"
        assert body["logs"][0]["isPinned"] is False

    async def test_incident_endpoints(self, async_client, admin_headers, admin_user, db_session: AsyncSession):
        log = await add_log(db_session, action="UNAUTHORIZED_ACCESS", status="FAILURE")

        marked = await async_client.post(
            f"/api/soc/incidents/{log.id}/mark", json={"priority": "CRITICAL"}, headers=admin_headers
        )
        assert marked.status_code == 200
        assert marked.json()["incidentStatus"] == "NEW"

        resolved = await async_client.put(
            f"/api/soc/incidents/{log.id}",
            json={"incidentStatus": "RESOLVED", "analystNotes": "benign"},
            headers=admin_headers,
        )
        assert resolved.status_code == 200
        assert resolved.json()["resolvedBy"] == admin_user.id

        invalid = await async_client.put(
            f"/api/soc/incidents/{log.id}", json={"incidentStatus": "ESCALATED"}, headers=admin_headers
        )
        assert invalid.status_code == 400

    async def test_pin_endpoints(self, async_client, admin_headers, admin_user, db_session: AsyncSession):
        log = await add_log(db_session)

        pinned = await async_client.post(f"/api/soc/audit-logs/{log.id}/pin", headers=admin_headers)
        assert pinned.json()["pinnedBy"] == admin_user.id

        unpinned = await async_client.delete(f"/api/soc/audit-logs/{log.id}/pin", headers=admin_headers)
        assert unpinned.json()["isPinned"] is False

        missing = await async_client.post("/api/soc/audit-logs/999999/pin", headers=admin_headers)
        assert missing.status_code == 404
        assert missing.json()["error"] == "Audit log not found"

    async def test_stats_alerts_activity(self, async_client, admin_headers, db_session: AsyncSession):
        await add_log(db_session, action="AUTH_FAILED", status="FAILURE", user_id=8)

        stats = await async_client.get("/api/soc/stats", headers=admin_headers)
        assert stats.status_code == 200
        assert stats.json()["byAction"]["AUTH_FAILED"] >= 1

        alerts = await async_client.get("/api/soc/alerts", headers=admin_headers)
        assert any(item["userId"] == 8 for item in alerts.json())

        activity = await async_client.get("/api/soc/users/8/activity", params={"days": 7}, headers=admin_headers)
        assert activity.status_code == 200
        assert activity.json()["totalActions"] == 1
        assert activity.json()["recentLogs"][0]["action"] == "AUTH_FAILED"

    async def test_blocked_ip_and_trusted_user_endpoints(self, async_client, admin_headers):
        blocked = await async_client.post(
            "/api/soc/blocked-ips", json={"ipAddress": "10.7.7.7", "reason": "scan"}, headers=admin_headers
        )
        assert blocked.status_code == 201
        listed = await async_client.get("/api/soc/blocked-ips", headers=admin_headers)
        assert [item["ipAddress"] for item in listed.json()] == ["10.7.7.7"]
        unblocked = await async_client.delete("/api/soc/blocked-ips/10.7.7.7", headers=admin_headers)
        assert unblocked.json()["isActive"] is False
        assert (await async_client.delete("/api/soc/blocked-ips/10.8.8.8", headers=admin_headers)).status_code == 404

        empty = await async_client.post("/api/soc/trusted-users", json={"reason": "none"}, headers=admin_headers)
        assert empty.status_code == 400

        trusted = await async_client.post(
            "/api/soc/trusted-users", json={"ipAddress": "10.5.5.5"}, headers=admin_headers
        )
        assert trusted.status_code == 201
        trusted_id = trusted.json()["id"]
        removed = await async_client.delete(f"/api/soc/trusted-users/{trusted_id}", headers=admin_headers)
        assert removed.status_code == 200
        assert (await async_client.get("/api/soc/trusted-users", headers=admin_headers)).json() == []
