"""
Unit Tests for ORM Mapping Validation

Tests ensure SQLAlchemy relationships are correctly configured
and the mapper can initialize without errors.
"""
import pytest


class TestORMMappings:
    """Tests for SQLAlchemy ORM mapping configuration."""

    def test_configure_mappers_succeeds(self):
        """All ORM mappers should configure without errors."""
        from sqlalchemy.orm import configure_mappers
        from schooladmin.models import (
            Soldier, Role, Department,
            Permission, RolePermission, UserPermission,
            APIKey, TrustedUser, BlockedIP, AuditLog,
        )

        # This should not raise any exceptions
        configure_mappers()

    def test_role_permissions_relationship(self):
        """Role.permissions and RolePermission.role must back-populate each other."""
        from sqlalchemy.orm import configure_mappers
        from schooladmin.models import Role, RolePermission

        configure_mappers()

        assert Role.permissions.property.back_populates == "role"
        assert RolePermission.role.property.back_populates == "permissions"

    def test_soldier_relationships(self):
        from sqlalchemy.orm import configure_mappers
        from schooladmin.models import Soldier

        configure_mappers()

        assert hasattr(Soldier, "role")
        assert hasattr(Soldier, "department")

    def test_verify_orm_mappings_function(self):
        """The startup verification helper should succeed."""
        from schooladmin.main import verify_orm_mappings

        verify_orm_mappings()


class TestAuditLogColumns:
    """The SOC UI relies on these columns being present."""

    @pytest.mark.parametrize(
        "column",
        [
            "user_id", "user_email", "api_key_id", "action", "resource", "resource_id",
            "details", "status", "error_message", "ip_address", "user_agent",
            "http_method", "http_path", "request_size", "response_size", "response_time",
            "created_at", "incident_status", "priority", "assigned_to", "analyst_notes",
            "resolved_at", "resolved_by", "is_pinned", "pinned_at", "pinned_by",
        ],
    )
    def test_column_exists(self, column):
        from schooladmin.models import AuditLog

        assert column in AuditLog.__table__.columns

    def test_api_key_stores_no_plaintext_column(self):
        from schooladmin.models import APIKey

        columns = set(APIKey.__table__.columns.keys())
        assert "key_hash" in columns
        assert "key" not in columns
